"""Assessment engine: attempt numbering, limits, grading, best-score tracking.

Attempts are the source of truth for the progression gate's mastery check.
Every mutation for a learner runs under that learner's lock.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from pathgate.content.catalog import ContentCatalog
from pathgate.core.errors import (
    AttemptLimitExceededError,
    DuplicateAttemptError,
    NotFoundError,
    TimeLimitExceededError,
    ValidationError,
)
from pathgate.core.event_bus import EVENT_ATTEMPT_RECORDED, EventBus
from pathgate.core.logging import DOMAIN_ASSESSMENT, get_domain_logger
from pathgate.persistence.store import ProgressStore
from pathgate.schemas.attempts import (
    AssessmentAttempt,
    AttemptSession,
    AttemptStart,
    KnowledgeGap,
    ManualGrade,
    SubmissionResult,
    SubmittedAnswer,
)
from pathgate.schemas.content import AssessmentNode, EssayQuestion
from pathgate.schemas.progress import ProgressRecord, utcnow
from pathgate.services import grading
from pathgate.services.locks import LearnerLocks
from pathgate.services.progression import ProgressionGate

logger = get_domain_logger(__name__, DOMAIN_ASSESSMENT)


def _merge_answers(base: list[SubmittedAnswer], override: list[SubmittedAnswer]) -> list[SubmittedAnswer]:
    merged = {a.question_id: a for a in base}
    for answer in override:
        merged[answer.question_id] = answer
    return list(merged.values())


class AssessmentEngine:
    def __init__(
        self,
        catalog: ContentCatalog,
        store: ProgressStore,
        gate: ProgressionGate,
        events: EventBus | None = None,
        locks: LearnerLocks | None = None,
        *,
        knowledge_gap_threshold: float = 0.70,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.store = store
        self.gate = gate
        self.events = events
        self.locks = locks or gate.locks
        self.knowledge_gap_threshold = knowledge_gap_threshold
        self.clock = clock

    def _validate_answers(self, assessment: AssessmentNode, answers: list[SubmittedAnswer]) -> None:
        seen: set[str] = set()
        for answer in answers:
            if assessment.question(answer.question_id) is None:
                raise ValidationError(
                    f"Question {answer.question_id} is not part of assessment {assessment.id}", field="answers"
                )
            if answer.question_id in seen:
                raise ValidationError(f"Question {answer.question_id} answered more than once", field="answers")
            seen.add(answer.question_id)

    @staticmethod
    def _limit_reached(assessment: AssessmentNode, attempts: list[AssessmentAttempt]) -> bool:
        return assessment.max_attempts is not None and len(attempts) >= assessment.max_attempts

    @staticmethod
    def _best_passed(attempts: list[AssessmentAttempt]) -> AssessmentAttempt | None:
        return max((a for a in attempts if a.passed), key=lambda a: a.score, default=None)

    # -- timed sessions -------------------------------------------------

    async def start_attempt(self, learner_id: str, assessment_id: str, now: datetime | None = None) -> AttemptStart:
        """Open (or resume) a timed attempt.

        A session past its deadline is submitted first with the answers saved so
        far. When that leaves the learner at the attempt limit, no new session is
        opened: a passed attempt is returned as ``existing``, otherwise the
        finalized result alone is returned. The limit error is raised only when
        nothing was finalized by this call.
        """
        await self.gate.require_learner(learner_id)
        assessment = self.catalog.get_assessment(assessment_id)
        now = now or self.clock()
        expired = None
        existing = None
        limit_error = None

        async with self.locks.for_learner(learner_id):
            session = await self.store.get_session(learner_id, assessment_id)
            if session is not None:
                if session.deadline is None or now <= session.deadline:
                    return AttemptStart(session=session)
                expired = await self._finalize_session(session, assessment, now)
                session = None

            attempts = await self.store.list_attempts(learner_id, assessment_id)
            if self._limit_reached(assessment, attempts):
                best = self._best_passed(attempts)
                if best is not None:
                    existing = SubmissionResult(attempt=best, redirected_to_existing=True)
                else:
                    limit_error = AttemptLimitExceededError(assessment_id, assessment.max_attempts)
            else:
                session = AttemptSession(
                    assessment_id=assessment_id,
                    learner_id=learner_id,
                    attempt_number=len(attempts) + 1,
                    started_at=now,
                    deadline=now + timedelta(minutes=assessment.time_limit) if assessment.time_limit else None,
                )
                await self.store.save_session(session)

        finalized = None
        if expired is not None:
            finalized = SubmissionResult(attempt=expired, newly_unlocked=await self._notify(expired))
        if limit_error is not None and finalized is None:
            raise limit_error
        if session is not None:
            logger.info(
                "Started attempt %s on %s for learner=%s (deadline=%s)",
                session.attempt_number, assessment_id, learner_id, session.deadline,
            )
        return AttemptStart(session=session, finalized=finalized, existing=existing)

    async def save_answers(
        self,
        learner_id: str,
        assessment_id: str,
        answers: list[SubmittedAnswer],
        now: datetime | None = None,
    ) -> AttemptSession:
        assessment = self.catalog.get_assessment(assessment_id)
        self._validate_answers(assessment, answers)
        now = now or self.clock()
        async with self.locks.for_learner(learner_id):
            session = await self.store.get_session(learner_id, assessment_id)
            if session is None:
                raise NotFoundError("attempt_session", f"{learner_id}/{assessment_id}")
            if session.deadline is not None and now > session.deadline:
                raise TimeLimitExceededError(
                    f"Time limit for assessment {assessment_id} expired at {session.deadline.isoformat()}",
                    details={"assessment_id": assessment_id, "deadline": session.deadline.isoformat()},
                )
            session.answers = _merge_answers(session.answers, answers)
            await self.store.save_session(session)
        return session

    async def finalize_expired(self, now: datetime | None = None) -> list[SubmissionResult]:
        """Submit every session past its deadline with the answers saved so far."""
        now = now or self.clock()
        results: list[SubmissionResult] = []
        for session in await self.store.list_sessions():
            if session.deadline is None or now <= session.deadline:
                continue
            assessment = self.catalog.get_assessment(session.assessment_id)
            async with self.locks.for_learner(session.learner_id):
                current = await self.store.get_session(session.learner_id, session.assessment_id)
                if current is None or current.attempt_number != session.attempt_number:
                    continue
                attempt = await self._finalize_session(current, assessment, now)
            unlocked = await self._notify(attempt)
            results.append(SubmissionResult(attempt=attempt, newly_unlocked=unlocked))
        return results

    async def _finalize_session(self, session: AttemptSession, assessment: AssessmentNode, now: datetime) -> AssessmentAttempt:
        time_spent = max(0, int((now - session.started_at).total_seconds()))
        attempt = self._grade(
            assessment,
            session.learner_id,
            session.attempt_number,
            session.answers,
            time_spent=time_spent,
            started_at=session.started_at,
            submitted_at=now,
            time_expired=True,
        )
        await self._persist(assessment, attempt)
        logger.info(
            "Finalized expired attempt %s on %s for learner=%s",
            attempt.attempt_number, assessment.id, session.learner_id,
        )
        return attempt

    # -- submission -------------------------------------------------------

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
        await self.gate.require_learner(learner_id)
        assessment = self.catalog.get_assessment(assessment_id)
        if time_spent < 0:
            raise ValidationError("time_spent must not be negative", field="time_spent")
        self._validate_answers(assessment, answers)
        now = now or self.clock()

        async with self.locks.for_learner(learner_id):
            attempts = await self.store.list_attempts(learner_id, assessment_id)
            next_number = len(attempts) + 1
            if attempt_number is not None and attempt_number < next_number:
                raise DuplicateAttemptError(
                    f"Attempt {attempt_number} for {assessment_id} was already submitted",
                    field="attempt_number",
                )
            if attempt_number is not None and attempt_number != next_number:
                raise ValidationError(
                    f"Attempt number {attempt_number} out of sequence (expected {next_number})",
                    field="attempt_number",
                )
            if self._limit_reached(assessment, attempts):
                best = self._best_passed(attempts)
                if best is not None:
                    logger.info(
                        "Attempt limit reached on %s for learner=%s; returning passed attempt %s",
                        assessment_id, learner_id, best.attempt_number,
                    )
                    return SubmissionResult(attempt=best, redirected_to_existing=True)
                raise AttemptLimitExceededError(assessment_id, assessment.max_attempts)

            session = await self.store.get_session(learner_id, assessment_id)
            started_at = now - timedelta(seconds=time_spent)
            deadline_passed = False
            if session is not None and session.attempt_number == next_number:
                answers = _merge_answers(session.answers, answers)
                started_at = session.started_at
                time_spent = time_spent or max(0, int((now - session.started_at).total_seconds()))
                deadline_passed = session.deadline is not None and now > session.deadline
            time_expired = deadline_passed or (
                assessment.time_limit is not None and time_spent > assessment.time_limit * 60
            )
            attempt = self._grade(
                assessment,
                learner_id,
                next_number,
                answers,
                time_spent=time_spent,
                started_at=started_at,
                submitted_at=now,
                time_expired=time_expired,
            )
            await self._persist(assessment, attempt)

        logger.info(
            "Recorded attempt %s on %s for learner=%s score=%s passed=%s status=%s expired=%s",
            attempt.attempt_number, assessment_id, learner_id, attempt.score, attempt.passed,
            attempt.grading_status, attempt.time_expired,
        )
        unlocked = await self._notify(attempt)
        return SubmissionResult(attempt=attempt, newly_unlocked=unlocked)

    def _grade(
        self,
        assessment: AssessmentNode,
        learner_id: str,
        attempt_number: int,
        answers: list[SubmittedAnswer],
        *,
        time_spent: int,
        started_at: datetime,
        submitted_at: datetime,
        time_expired: bool,
    ) -> AssessmentAttempt:
        graded = grading.grade_answers(assessment, answers)
        summary = grading.summarize(assessment, graded)
        return AssessmentAttempt(
            assessment_id=assessment.id,
            learner_id=learner_id,
            attempt_number=attempt_number,
            answers=graded,
            score=summary.score,
            points_earned=summary.points_earned,
            total_points=summary.total_points,
            passed=summary.passed,
            grading_status="pending_manual_grade" if summary.pending_manual_grade else "graded",
            time_spent=time_spent,
            time_expired=time_expired,
            started_at=started_at,
            submitted_at=submitted_at,
            feedback=grading.build_feedback(assessment, graded, summary.score, summary.passed),
        )

    async def _persist(self, assessment: AssessmentNode, attempt: AssessmentAttempt) -> None:
        await self.store.insert_attempt(attempt)
        await self.store.delete_session(attempt.learner_id, assessment.id)
        await self._sync_progress(assessment, attempt.learner_id, added_time=attempt.time_spent)

    async def _sync_progress(self, assessment: AssessmentNode, learner_id: str, added_time: int = 0) -> None:
        """Recompute the assessment's progress record from all attempts, then its owner's."""
        attempts = await self.store.list_attempts(learner_id, assessment.id)
        any_passed = any(a.passed for a in attempts)
        now = self.clock()

        record = await self.store.get_progress(learner_id, assessment.id) or ProgressRecord(
            learner_id=learner_id, content_id=assessment.id
        )
        record.attempts_count = len(attempts)
        record.best_score = max((a.score for a in attempts), default=None)
        record.status = "completed" if any_passed else "in_progress"
        record.completion_percentage = 100.0 if any_passed else record.completion_percentage
        record.time_spent += added_time
        record.last_accessed = now
        await self.store.upsert_progress(record)

        owner_id = self.catalog.owner_of(assessment.id)
        if owner_id is None:
            return
        owner = await self.store.get_progress(learner_id, owner_id) or ProgressRecord(
            learner_id=learner_id, content_id=owner_id
        )
        if any_passed:
            owner.status = "completed"
            owner.completion_percentage = 100.0
        elif owner.status != "completed":
            owner.status = "in_progress"
        owner.last_accessed = now
        await self.store.upsert_progress(owner)
        if any_passed:
            await self.gate.complete_course_if_done(learner_id, assessment.id)

    async def _notify(self, attempt: AssessmentAttempt) -> list[str]:
        unlocked: list[str] = []
        touched = [attempt.assessment_id]
        owner_id = self.catalog.owner_of(attempt.assessment_id)
        if attempt.passed and owner_id is not None:
            touched.append(owner_id)
        course_id = self.catalog.course_of(attempt.assessment_id) if attempt.passed else None
        if course_id is not None and course_id not in touched:
            course = await self.store.get_progress(attempt.learner_id, course_id)
            if course is not None and course.status == "completed":
                touched.append(course_id)
        for content_id in touched:
            for dependent in await self.gate.on_progress_changed(attempt.learner_id, content_id):
                if dependent not in unlocked:
                    unlocked.append(dependent)
        if self.events is not None:
            await self.events.publish(
                EVENT_ATTEMPT_RECORDED,
                "assessment_engine",
                {
                    "learner_id": attempt.learner_id,
                    "assessment_id": attempt.assessment_id,
                    "attempt_number": attempt.attempt_number,
                    "score": attempt.score,
                    "passed": attempt.passed,
                    "grading_status": attempt.grading_status,
                },
            )
        return unlocked

    # -- manual grading ---------------------------------------------------

    async def grade_manually(
        self,
        learner_id: str,
        assessment_id: str,
        attempt_number: int,
        grades: list[ManualGrade],
    ) -> SubmissionResult:
        assessment = self.catalog.get_assessment(assessment_id)
        async with self.locks.for_learner(learner_id):
            attempt = await self.get_attempt(learner_id, assessment_id, attempt_number)
            by_id = {a.question_id: a for a in attempt.answers}
            for grade in grades:
                question = assessment.question(grade.question_id)
                answer = by_id.get(grade.question_id)
                if not isinstance(question, EssayQuestion) or answer is None:
                    raise ValidationError(
                        f"Question {grade.question_id} is not a manually graded question", field="question_id"
                    )
                if answer.status not in {"pending_manual_grade", "manually_graded"}:
                    raise ValidationError(f"Question {grade.question_id} has no response to grade", field="question_id")
                if grade.points_earned > question.points:
                    raise ValidationError(
                        f"points_earned {grade.points_earned} exceeds {question.points} for {grade.question_id}",
                        field="points_earned",
                    )
                answer.status = "manually_graded"
                answer.points_earned = grade.points_earned
                answer.feedback = grade.feedback

            summary = grading.summarize(assessment, attempt.answers)
            attempt.points_earned = summary.points_earned
            attempt.score = summary.score
            attempt.passed = summary.passed
            attempt.grading_status = "pending_manual_grade" if summary.pending_manual_grade else "graded"
            attempt.feedback = grading.build_feedback(assessment, attempt.answers, summary.score, summary.passed)
            await self.store.update_attempt(attempt)
            await self._sync_progress(assessment, learner_id)

        logger.info(
            "Manually graded attempt %s on %s for learner=%s score=%s passed=%s",
            attempt_number, assessment_id, learner_id, attempt.score, attempt.passed,
        )
        unlocked = await self._notify(attempt)
        return SubmissionResult(attempt=attempt, newly_unlocked=unlocked)

    # -- queries ----------------------------------------------------------

    async def list_attempts(self, learner_id: str, assessment_id: str) -> list[AssessmentAttempt]:
        await self.gate.require_learner(learner_id)
        self.catalog.get_assessment(assessment_id)
        return await self.store.list_attempts(learner_id, assessment_id)

    async def get_attempt(self, learner_id: str, assessment_id: str, attempt_number: int) -> AssessmentAttempt:
        for attempt in await self.store.list_attempts(learner_id, assessment_id):
            if attempt.attempt_number == attempt_number:
                return attempt
        raise NotFoundError("attempt", f"{learner_id}/{assessment_id}/{attempt_number}")

    async def best_attempt(self, learner_id: str, assessment_id: str) -> AssessmentAttempt | None:
        attempts = await self.list_attempts(learner_id, assessment_id)
        return max(attempts, key=lambda a: (a.score, a.passed), default=None)

    async def knowledge_gaps(self, learner_id: str) -> list[KnowledgeGap]:
        await self.gate.require_learner(learner_id)
        totals: dict[str, dict[str, float]] = {}
        for attempt in await self.store.list_attempts(learner_id):
            if attempt.assessment_id not in self.catalog:
                continue
            assessment = self.catalog.get_assessment(attempt.assessment_id)
            for topic, stats in grading.topic_breakdown(assessment, attempt.answers).items():
                agg = totals.setdefault(topic, {"earned": 0.0, "possible": 0.0, "seen": 0})
                agg["earned"] += stats["earned"]
                agg["possible"] += stats["possible"]
                agg["seen"] += stats["total"]
        gaps = [
            KnowledgeGap(topic=topic, proficiency=round(agg["earned"] / agg["possible"], 4), questions_seen=int(agg["seen"]))
            for topic, agg in totals.items()
            if agg["possible"] > 0 and agg["earned"] / agg["possible"] < self.knowledge_gap_threshold
        ]
        return sorted(gaps, key=lambda g: (g.proficiency, g.topic))
