from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from pathgate.api.deps import get_services
from pathgate.services.container import ServiceContainer

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/stream")
async def stream_events(
    replay: int = 20, learner_id: str | None = None, services: ServiceContainer = Depends(get_services)
):
    queue = await services.events.subscribe(replay_last=replay, learner_id=learner_id)

    async def generator():
        try:
            while True:
                event = await queue.get()
                yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"
        except asyncio.CancelledError:
            return
        finally:
            await services.events.unsubscribe(queue)

    return StreamingResponse(generator(), media_type="text/event-stream")


@router.get("/recent")
async def recent_events(
    event_type: str | None = None,
    learner_id: str | None = None,
    services: ServiceContainer = Depends(get_services),
):
    return {"events": services.events.history(event_type, learner_id)}
