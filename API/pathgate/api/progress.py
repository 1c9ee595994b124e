from fastapi import APIRouter, Depends

from pathgate.api.deps import get_services
from pathgate.schemas.progress import AccessDecision, CourseOverview, ProgressChange, ProgressRecord, ProgressUpdate
from pathgate.services.container import ServiceContainer

router = APIRouter(prefix="/progress", tags=["progress"])


@router.get("/{learner_id}", response_model=list[ProgressRecord])
async def list_progress(learner_id: str, services: ServiceContainer = Depends(get_services)):
    await services.gate.require_learner(learner_id)
    return await services.store.list_progress(learner_id)


@router.get("/{learner_id}/access/{content_id}", response_model=AccessDecision)
async def can_access(learner_id: str, content_id: str, services: ServiceContainer = Depends(get_services)):
    return await services.gate.can_access(learner_id, content_id)


@router.put("/{learner_id}/content/{content_id}", response_model=ProgressChange)
async def update_progress(
    learner_id: str,
    content_id: str,
    payload: ProgressUpdate,
    services: ServiceContainer = Depends(get_services),
):
    return await services.workflow.update_progress(learner_id, content_id, payload)


@router.get("/{learner_id}/courses/{course_id}", response_model=CourseOverview)
async def course_overview(learner_id: str, course_id: str, services: ServiceContainer = Depends(get_services)):
    return await services.gate.course_overview(learner_id, course_id)
