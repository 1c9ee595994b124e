"""In-process fan-out of learning events: unlocks, recorded attempts, roadmap changes.

Each subscriber gets a bounded queue, optionally scoped to one learner. A
subscriber that falls behind loses new events instead of stalling the engines.
"""
import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone

from pathgate.core.logging import DOMAIN_EVENTS, get_domain_logger

logger = get_domain_logger(__name__, DOMAIN_EVENTS)

EVENT_CONTENT_UNLOCKED = "content_unlocked"
EVENT_ATTEMPT_RECORDED = "assessment_attempt_recorded"
EVENT_ROADMAP_UPDATED = "roadmap_updated"
EVENT_TYPES = frozenset({EVENT_CONTENT_UNLOCKED, EVENT_ATTEMPT_RECORDED, EVENT_ROADMAP_UPDATED})


@dataclass
class _Subscription:
    queue: asyncio.Queue
    learner_id: str | None = None
    dropped: int = 0

    def accepts(self, event: dict) -> bool:
        return self.learner_id is None or event["data"].get("learner_id") == self.learner_id


class EventBus:
    def __init__(self, history_size: int = 200, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscriptions: list[_Subscription] = []
        self._history: deque[dict] = deque(maxlen=history_size)
        self._lock = asyncio.Lock()

    async def publish(self, event_type: str, source: str, data: dict) -> dict:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            "source": source,
            "data": data,
        }
        async with self._lock:
            self._history.append(event)
            subscriptions = [s for s in self._subscriptions if s.accepts(event)]
        for sub in subscriptions:
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.warning(
                    "Subscriber queue full; dropped %s event (learner filter=%s, dropped=%s)",
                    event_type, sub.learner_id, sub.dropped,
                )
        return event

    async def subscribe(self, replay_last: int = 10, learner_id: str | None = None) -> asyncio.Queue:
        sub = _Subscription(queue=asyncio.Queue(maxsize=self.queue_size), learner_id=learner_id)
        replay = min(replay_last, self.queue_size)
        async with self._lock:
            self._subscriptions.append(sub)
            history = [e for e in self._history if sub.accepts(e)][-replay:] if replay > 0 else []
        for event in history:
            sub.queue.put_nowait(event)
        return sub.queue

    async def unsubscribe(self, queue: asyncio.Queue) -> None:
        async with self._lock:
            self._subscriptions = [s for s in self._subscriptions if s.queue is not queue]

    def history(self, event_type: str | None = None, learner_id: str | None = None) -> list[dict]:
        return [
            event for event in self._history
            if (event_type is None or event["type"] == event_type)
            and (learner_id is None or event["data"].get("learner_id") == learner_id)
        ]
