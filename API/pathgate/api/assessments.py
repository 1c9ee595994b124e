from fastapi import APIRouter, Depends

from pathgate.api.deps import get_services
from pathgate.schemas.attempts import (
    AssessmentAttempt,
    AttemptSession,
    AttemptStart,
    ManualGradeRequest,
    SaveAnswersRequest,
    StartAttemptRequest,
    SubmissionResult,
    SubmitAttemptRequest,
)
from pathgate.services.container import ServiceContainer

router = APIRouter(prefix="/assessments", tags=["assessments"])


@router.post("/{assessment_id}/start", response_model=AttemptStart)
async def start_attempt(
    assessment_id: str, payload: StartAttemptRequest, services: ServiceContainer = Depends(get_services)
):
    return await services.workflow.start_attempt(payload.learner_id, assessment_id)


@router.put("/{assessment_id}/answers", response_model=AttemptSession)
async def save_answers(
    assessment_id: str, payload: SaveAnswersRequest, services: ServiceContainer = Depends(get_services)
):
    return await services.assessments.save_answers(payload.learner_id, assessment_id, payload.answers)


@router.post("/{assessment_id}/submit", response_model=SubmissionResult)
async def submit_attempt(
    assessment_id: str, payload: SubmitAttemptRequest, services: ServiceContainer = Depends(get_services)
):
    return await services.workflow.submit_attempt(
        payload.learner_id,
        assessment_id,
        payload.answers,
        payload.time_spent,
        attempt_number=payload.attempt_number,
    )


@router.get("/{assessment_id}/attempts", response_model=list[AssessmentAttempt])
async def list_attempts(assessment_id: str, learner_id: str, services: ServiceContainer = Depends(get_services)):
    return await services.assessments.list_attempts(learner_id, assessment_id)


@router.post("/{assessment_id}/attempts/{attempt_number}/grade", response_model=SubmissionResult)
async def grade_attempt(
    assessment_id: str,
    attempt_number: int,
    payload: ManualGradeRequest,
    services: ServiceContainer = Depends(get_services),
):
    return await services.workflow.grade_manually(payload.learner_id, assessment_id, attempt_number, payload.grades)


@router.post("/expired/finalize", response_model=list[SubmissionResult])
async def finalize_expired(services: ServiceContainer = Depends(get_services)):
    return await services.workflow.finalize_expired()
