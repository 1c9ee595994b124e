"""Progression gate: prerequisite and mastery checks, one-hop unlock cascade.

Reads are lock-free. A reader may briefly see a node as locked right after a
concurrent unlock; the next read corrects it.
"""
from __future__ import annotations

from pathgate.content.catalog import ContentCatalog
from pathgate.core.errors import NotFoundError, ValidationError
from pathgate.core.event_bus import EVENT_CONTENT_UNLOCKED, EventBus
from pathgate.core.logging import DOMAIN_PROGRESSION, get_domain_logger
from pathgate.persistence.store import ProgressStore
from pathgate.schemas.content import AssessmentNode, CourseNode
from pathgate.schemas.progress import (
    AccessDecision,
    CourseOverview,
    LessonOverview,
    PrerequisiteStatus,
    ProgressRecord,
    ProgressUpdate,
    utcnow,
)
from pathgate.services.locks import LearnerLocks

logger = get_domain_logger(__name__, DOMAIN_PROGRESSION)


class ProgressionGate:
    def __init__(
        self,
        catalog: ContentCatalog,
        store: ProgressStore,
        events: EventBus | None = None,
        locks: LearnerLocks | None = None,
    ):
        self.catalog = catalog
        self.store = store
        self.events = events
        self.locks = locks or LearnerLocks()

    async def require_learner(self, learner_id: str):
        learner = await self.store.get_learner(learner_id)
        if learner is None:
            raise NotFoundError("learner", learner_id)
        return learner

    async def assessment_result(self, learner_id: str, assessment_id: str) -> tuple[bool | None, int | None]:
        """(passed, best_score) of the learner's best attempt; (None, None) if never attempted."""
        attempts = await self.store.list_attempts(learner_id, assessment_id)
        if not attempts:
            return None, None
        best = max(attempts, key=lambda a: (a.score, a.passed))
        return best.passed, best.score

    async def _prerequisite_status(self, learner_id: str, prereq_id: str) -> PrerequisiteStatus:
        node = self.catalog.get_content(prereq_id)
        record = await self.store.get_progress(learner_id, prereq_id)
        status = PrerequisiteStatus(
            content_id=prereq_id,
            kind=node.kind,
            title=node.title,
            completed=record is not None and record.status == "completed",
        )
        if isinstance(node, AssessmentNode):
            # An assessment prerequisite is cleared by passing it.
            passed, best_score = await self.assessment_result(learner_id, prereq_id)
            status.completed = status.completed or bool(passed)
            status.assessment_id = prereq_id
            status.assessment_passed = bool(passed)
            status.best_score = best_score
            status.required_score = node.minimum_passing_score
        elif node.mandatory_assessment_id:
            assessment = self.catalog.get_assessment(node.mandatory_assessment_id)
            passed, best_score = await self.assessment_result(learner_id, assessment.id)
            status.assessment_id = assessment.id
            status.assessment_passed = bool(passed)
            status.best_score = best_score
            status.required_score = assessment.minimum_passing_score
        return status

    async def can_access(self, learner_id: str, content_id: str) -> AccessDecision:
        await self.require_learner(learner_id)
        node = self.catalog.get_content(content_id)
        statuses = [await self._prerequisite_status(learner_id, p) for p in node.prerequisites]
        failing = [s.content_id for s in statuses if not s.satisfied]
        return AccessDecision(
            learner_id=learner_id,
            content_id=content_id,
            allowed=not failing,
            blocked_by=failing[0] if failing else None,
            failing_prerequisites=failing,
            prerequisites=statuses,
        )

    async def on_progress_changed(self, learner_id: str, content_id: str) -> list[str]:
        """Re-check direct dependents of ``content_id`` only; deeper nodes resolve on their next access.

        Returns dependents that are now accessible and not yet started, emitting
        a ``content_unlocked`` event for each.
        """
        unlocked: list[str] = []
        for dependent_id in self.catalog.list_dependents(content_id):
            decision = await self.can_access(learner_id, dependent_id)
            if not decision.allowed:
                continue
            record = await self.store.get_progress(learner_id, dependent_id)
            if record is None or record.status == "not_started":
                unlocked.append(dependent_id)
        for dependent_id in unlocked:
            logger.info("Unlocked %s for learner=%s (after %s)", dependent_id, learner_id, content_id)
            if self.events is not None:
                await self.events.publish(
                    EVENT_CONTENT_UNLOCKED,
                    "progression_gate",
                    {"learner_id": learner_id, "content_id": dependent_id, "unlocked_by": content_id},
                )
        return unlocked

    async def update_progress(
        self, learner_id: str, content_id: str, update: ProgressUpdate
    ) -> tuple[ProgressRecord, list[str]]:
        await self.require_learner(learner_id)
        self.catalog.get_content(content_id)
        if update.completion_percentage is not None and not 0 <= update.completion_percentage <= 100:
            raise ValidationError(
                f"completion_percentage must be within 0-100, got {update.completion_percentage}",
                field="completion_percentage",
            )
        if update.time_spent is not None and update.time_spent < 0:
            raise ValidationError(f"time_spent must not be negative, got {update.time_spent}", field="time_spent")

        async with self.locks.for_learner(learner_id):
            record = await self.store.get_progress(learner_id, content_id) or ProgressRecord(
                learner_id=learner_id, content_id=content_id
            )
            record.status = update.status
            if update.completion_percentage is not None:
                record.completion_percentage = update.completion_percentage
            elif update.status == "completed":
                record.completion_percentage = 100.0
            elif update.status == "not_started":
                record.completion_percentage = 0.0
            if update.time_spent is not None:
                record.time_spent = update.time_spent
            record.last_accessed = utcnow()
            saved = await self.store.upsert_progress(record)
            course_id = await self.complete_course_if_done(learner_id, content_id) if saved.status == "completed" else None

        unlocked = await self.on_progress_changed(learner_id, content_id)
        if course_id is not None:
            unlocked += [d for d in await self.on_progress_changed(learner_id, course_id) if d not in unlocked]
        return saved, unlocked

    async def _course_done(self, learner_id: str, course: CourseNode) -> bool:
        lessons = self.catalog.lessons_for_course(course.id)
        if not lessons:
            return False
        for lesson in lessons:
            record = await self.store.get_progress(learner_id, lesson.id)
            if record is None or record.status != "completed":
                return False
        if course.mandatory_assessment_id:
            passed, _ = await self.assessment_result(learner_id, course.mandatory_assessment_id)
            return bool(passed)
        return True

    async def complete_course_if_done(self, learner_id: str, content_id: str) -> str | None:
        """Mark the course of ``content_id`` completed once every lesson is done and its final assessment passed.

        Returns the course id when this call completed it. The caller holds the learner lock.
        """
        course_id = self.catalog.course_of(content_id)
        if course_id is None:
            return None
        record = await self.store.get_progress(learner_id, course_id) or ProgressRecord(
            learner_id=learner_id, content_id=course_id
        )
        if record.status == "completed" or not await self._course_done(learner_id, self.catalog.get_content(course_id)):
            return None
        record.status = "completed"
        record.completion_percentage = 100.0
        record.last_accessed = utcnow()
        await self.store.upsert_progress(record)
        logger.info("Course %s completed for learner=%s", course_id, learner_id)
        return course_id

    async def course_overview(self, learner_id: str, course_id: str) -> CourseOverview:
        await self.require_learner(learner_id)
        course = self.catalog.get_content(course_id)
        if not isinstance(course, CourseNode):
            raise NotFoundError("course", course_id)

        lessons: list[LessonOverview] = []
        for lesson in self.catalog.lessons_for_course(course_id):
            record = await self.store.get_progress(learner_id, lesson.id)
            decision = await self.can_access(learner_id, lesson.id)
            passed = None
            if lesson.mandatory_assessment_id:
                result, _ = await self.assessment_result(learner_id, lesson.mandatory_assessment_id)
                passed = bool(result)
            lessons.append(
                LessonOverview(
                    lesson_id=lesson.id,
                    title=lesson.title,
                    status=record.status if record else "not_started",
                    allowed=decision.allowed,
                    blocked_by=decision.blocked_by,
                    assessment_id=lesson.mandatory_assessment_id,
                    assessment_passed=passed,
                )
            )

        final_passed = None
        if course.mandatory_assessment_id:
            result, _ = await self.assessment_result(learner_id, course.mandatory_assessment_id)
            final_passed = bool(result)

        completed = sum(1 for lesson in lessons if lesson.status == "completed")
        total = len(lessons)
        return CourseOverview(
            learner_id=learner_id,
            course_id=course_id,
            overall_progress=round(completed / total * 100) if total else 0,
            total_lessons=total,
            completed_lessons=completed,
            lessons=lessons,
            final_assessment_passed=final_passed,
            is_completed=completed == total and final_passed is not False,
        )
