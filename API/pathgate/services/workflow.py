"""Learner-action flows that span the engines: submit -> gate -> roadmap adaptation."""
from __future__ import annotations

from datetime import datetime

from pathgate.core.errors import ConcurrencyConflictError, PathgateError
from pathgate.core.logging import DOMAIN_ROADMAP, get_domain_logger
from pathgate.schemas.attempts import AttemptStart, ManualGrade, SubmissionResult, SubmittedAnswer
from pathgate.schemas.progress import ProgressChange, ProgressUpdate
from pathgate.services.assessment import AssessmentEngine
from pathgate.services.progression import ProgressionGate
from pathgate.services.roadmap import RoadmapEngine

logger = get_domain_logger(__name__, DOMAIN_ROADMAP)


class LearningWorkflow:
    """Runs roadmap upkeep after each learner action.

    The learner action is already stored when upkeep runs, so upkeep errors are
    reported on the result (``roadmap_error``) instead of failing the action.
    """

    def __init__(self, gate: ProgressionGate, assessments: AssessmentEngine, roadmaps: RoadmapEngine):
        self.gate = gate
        self.assessments = assessments
        self.roadmaps = roadmaps

    async def _upkeep(self, learner_id: str, content_id: str, step) -> str | None:
        try:
            await step()
        except ConcurrencyConflictError as exc:
            logger.error(
                "Roadmap update for learner=%s content=%s lost a second version conflict: %s",
                learner_id, content_id, exc.message,
            )
            return exc.code
        except PathgateError as exc:
            logger.warning(
                "Roadmap update skipped for learner=%s content=%s: %s", learner_id, content_id, exc.message
            )
            return exc.code
        return None

    async def _adapt(self, learner_id: str, trigger: str, content_id: str) -> str | None:
        async def _step():
            await self.roadmaps.adapt(learner_id, trigger, content_id)
            course_id = self.gate.catalog.course_of(content_id)
            if course_id is None:
                return
            course = await self.gate.store.get_progress(learner_id, course_id)
            if course is not None and course.status == "completed":
                await self.roadmaps.adapt(learner_id, "content_completed", course_id)

        return await self._upkeep(learner_id, content_id, _step)

    async def _after_attempt(self, result: SubmissionResult) -> SubmissionResult:
        attempt = result.attempt
        if result.redirected_to_existing:
            return result
        if attempt.passed:
            result.roadmap_error = await self._adapt(attempt.learner_id, "assessment_passed", attempt.assessment_id)
        elif attempt.grading_status == "graded":
            result.roadmap_error = await self._adapt(attempt.learner_id, "assessment_failed", attempt.assessment_id)
        return result

    async def start_attempt(self, learner_id: str, assessment_id: str, now: datetime | None = None) -> AttemptStart:
        start = await self.assessments.start_attempt(learner_id, assessment_id, now)
        if start.finalized is not None:
            await self._after_attempt(start.finalized)
        return start

    async def submit_attempt(
        self,
        learner_id: str,
        assessment_id: str,
        answers: list[SubmittedAnswer],
        time_spent: int = 0,
        *,
        attempt_number: int | None = None,
        now: datetime | None = None,
    ) -> SubmissionResult:
        result = await self.assessments.submit_attempt(
            learner_id, assessment_id, answers, time_spent, attempt_number=attempt_number, now=now
        )
        return await self._after_attempt(result)

    async def grade_manually(
        self, learner_id: str, assessment_id: str, attempt_number: int, grades: list[ManualGrade]
    ) -> SubmissionResult:
        result = await self.assessments.grade_manually(learner_id, assessment_id, attempt_number, grades)
        return await self._after_attempt(result)

    async def finalize_expired(self, now: datetime | None = None) -> list[SubmissionResult]:
        results = await self.assessments.finalize_expired(now)
        for result in results:
            await self._after_attempt(result)
        return results

    async def update_progress(self, learner_id: str, content_id: str, update: ProgressUpdate) -> ProgressChange:
        record, unlocked = await self.gate.update_progress(learner_id, content_id, update)
        if record.status == "completed":
            error = await self._adapt(learner_id, "content_completed", content_id)
        else:
            error = await self._upkeep(
                learner_id, content_id, lambda: self.roadmaps.sync_progress(learner_id, content_id)
            )
        return ProgressChange(record=record, newly_unlocked=unlocked, roadmap_error=error)
