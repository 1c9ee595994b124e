from fastapi import APIRouter, Depends
from pydantic import BaseModel

from pathgate.api.deps import get_services
from pathgate.schemas.attempts import KnowledgeGap
from pathgate.schemas.progress import Learner
from pathgate.services.container import ServiceContainer

router = APIRouter(prefix="/learners", tags=["learners"])


class EnrollRequest(BaseModel):
    course_id: str


@router.post("", response_model=Learner, status_code=201)
async def register_learner(payload: Learner, services: ServiceContainer = Depends(get_services)):
    return await services.learners.register_learner(payload)


@router.get("/{learner_id}", response_model=Learner)
async def get_learner(learner_id: str, services: ServiceContainer = Depends(get_services)):
    return await services.learners.get_learner(learner_id)


@router.post("/{learner_id}/enrollments", response_model=Learner)
async def enroll(learner_id: str, payload: EnrollRequest, services: ServiceContainer = Depends(get_services)):
    return await services.learners.enroll(learner_id, payload.course_id)


@router.get("/{learner_id}/knowledge-gaps", response_model=list[KnowledgeGap])
async def knowledge_gaps(learner_id: str, services: ServiceContainer = Depends(get_services)):
    return await services.assessments.knowledge_gaps(learner_id)
