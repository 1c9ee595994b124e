from fastapi import APIRouter, Depends
from fastapi.responses import Response

from pathgate.api.deps import get_services
from pathgate.schemas.roadmap import AdaptRoadmapRequest, GenerateRoadmapRequest, Roadmap, RoadmapStatusRequest
from pathgate.services.container import ServiceContainer

router = APIRouter(prefix="/roadmaps", tags=["roadmaps"])


@router.post("/{learner_id}/generate", response_model=Roadmap)
async def generate_roadmap(
    learner_id: str, payload: GenerateRoadmapRequest, services: ServiceContainer = Depends(get_services)
):
    return await services.roadmaps.generate(learner_id, payload.enrolled_content, force=payload.force)


@router.get("/{learner_id}", response_model=Roadmap)
async def get_roadmap(learner_id: str, services: ServiceContainer = Depends(get_services)):
    return await services.roadmaps.get_active(learner_id)


@router.post("/{learner_id}/adapt", response_model=Roadmap)
async def adapt_roadmap(
    learner_id: str, payload: AdaptRoadmapRequest, services: ServiceContainer = Depends(get_services)
):
    roadmap = await services.roadmaps.adapt(learner_id, payload.trigger, payload.content_id)
    if roadmap is None:
        return Response(status_code=204)
    return roadmap


@router.patch("/{learner_id}/status", response_model=Roadmap)
async def set_roadmap_status(
    learner_id: str, payload: RoadmapStatusRequest, services: ServiceContainer = Depends(get_services)
):
    return await services.roadmaps.set_status(learner_id, payload.status)
