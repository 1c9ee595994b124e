from __future__ import annotations

import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pathgate.core.errors import ConcurrencyConflictError, DuplicateAttemptError
from pathgate.models.entities import (
    AssessmentAttemptRow,
    AttemptSessionRow,
    LearnerRow,
    ProgressRecordRow,
    RoadmapRow,
)
from pathgate.persistence.store import ProgressStore
from pathgate.schemas.attempts import AssessmentAttempt, AttemptSession
from pathgate.schemas.progress import Learner, ProgressRecord
from pathgate.schemas.roadmap import Roadmap

logger = logging.getLogger(__name__)


def _learner_from_row(row: LearnerRow) -> Learner:
    return Learner(
        id=row.id,
        display_name=row.display_name,
        learning_preferences=row.learning_preferences or {},
        enrolled_course_ids=list(row.enrolled_course_ids or []),
    )


def _progress_from_row(row: ProgressRecordRow) -> ProgressRecord:
    return ProgressRecord(
        learner_id=row.learner_id,
        content_id=row.content_id,
        status=row.status,
        completion_percentage=row.completion_percentage,
        time_spent=row.time_spent,
        attempts_count=row.attempts_count,
        best_score=row.best_score,
        last_accessed=row.last_accessed,
        version=row.version,
    )


def _attempt_from_row(row: AssessmentAttemptRow) -> AssessmentAttempt:
    return AssessmentAttempt(
        assessment_id=row.assessment_id,
        learner_id=row.learner_id,
        attempt_number=row.attempt_number,
        answers=row.answers or [],
        score=row.score,
        points_earned=row.points_earned,
        total_points=row.total_points,
        passed=row.passed,
        grading_status=row.grading_status,
        time_spent=row.time_spent,
        time_expired=row.time_expired,
        started_at=row.started_at,
        submitted_at=row.submitted_at,
        feedback=row.feedback,
    )


def _session_from_row(row: AttemptSessionRow) -> AttemptSession:
    return AttemptSession(
        assessment_id=row.assessment_id,
        learner_id=row.learner_id,
        attempt_number=row.attempt_number,
        started_at=row.started_at,
        deadline=row.deadline,
        answers=row.answers or [],
    )


def _roadmap_from_row(row: RoadmapRow) -> Roadmap:
    return Roadmap(
        learner_id=row.learner_id,
        status=row.status,
        items=row.items or [],
        reasoning=row.reasoning,
        source=row.source,
        generated_at=row.generated_at,
        updated_at=row.updated_at,
        version=row.version,
    )


class SqlProgressStore(ProgressStore):
    """PostgreSQL-backed store (SQLAlchemy async + asyncpg)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_learner(self, learner_id: str) -> Learner | None:
        async with self._session_factory() as db:
            row = await db.get(LearnerRow, learner_id)
            return _learner_from_row(row) if row else None

    async def save_learner(self, learner: Learner) -> Learner:
        async with self._session_factory() as db:
            row = await db.get(LearnerRow, learner.id)
            if row is None:
                row = LearnerRow(id=learner.id)
                db.add(row)
            row.display_name = learner.display_name
            row.learning_preferences = learner.learning_preferences
            row.enrolled_course_ids = list(learner.enrolled_course_ids)
            await db.commit()
        return learner

    async def get_progress(self, learner_id: str, content_id: str) -> ProgressRecord | None:
        async with self._session_factory() as db:
            row = await db.get(ProgressRecordRow, (learner_id, content_id))
            return _progress_from_row(row) if row else None

    async def upsert_progress(self, record: ProgressRecord) -> ProgressRecord:
        async with self._session_factory() as db:
            row = await db.get(ProgressRecordRow, (record.learner_id, record.content_id))
            if row is None:
                row = ProgressRecordRow(learner_id=record.learner_id, content_id=record.content_id, version=0)
                db.add(row)
            row.status = record.status
            row.completion_percentage = record.completion_percentage
            row.time_spent = record.time_spent
            row.attempts_count = record.attempts_count
            row.best_score = record.best_score
            row.last_accessed = record.last_accessed
            row.version = record.version + 1
            await db.commit()
            return _progress_from_row(row)

    async def list_progress(self, learner_id: str) -> list[ProgressRecord]:
        async with self._session_factory() as db:
            rows = (await db.execute(
                select(ProgressRecordRow).where(ProgressRecordRow.learner_id == learner_id)
            )).scalars().all()
            return [_progress_from_row(r) for r in rows]

    async def list_attempts(self, learner_id: str, assessment_id: str | None = None) -> list[AssessmentAttempt]:
        stmt = select(AssessmentAttemptRow).where(AssessmentAttemptRow.learner_id == learner_id)
        if assessment_id is not None:
            stmt = stmt.where(AssessmentAttemptRow.assessment_id == assessment_id)
        stmt = stmt.order_by(AssessmentAttemptRow.assessment_id, AssessmentAttemptRow.attempt_number)
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_attempt_from_row(r) for r in rows]

    async def insert_attempt(self, attempt: AssessmentAttempt) -> AssessmentAttempt:
        async with self._session_factory() as db:
            recorded = (await db.execute(
                select(func.count(AssessmentAttemptRow.id)).where(
                    AssessmentAttemptRow.learner_id == attempt.learner_id,
                    AssessmentAttemptRow.assessment_id == attempt.assessment_id,
                )
            )).scalar() or 0
            if attempt.attempt_number != recorded + 1:
                raise DuplicateAttemptError(
                    f"Attempt number {attempt.attempt_number} out of sequence (expected {recorded + 1})",
                    field="attempt_number",
                )
            payload = attempt.model_dump(mode="json")
            db.add(AssessmentAttemptRow(
                assessment_id=attempt.assessment_id,
                learner_id=attempt.learner_id,
                attempt_number=attempt.attempt_number,
                answers=payload["answers"],
                score=attempt.score,
                points_earned=attempt.points_earned,
                total_points=attempt.total_points,
                passed=attempt.passed,
                grading_status=attempt.grading_status,
                time_spent=attempt.time_spent,
                time_expired=attempt.time_expired,
                feedback=payload["feedback"],
                started_at=attempt.started_at,
                submitted_at=attempt.submitted_at,
            ))
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise DuplicateAttemptError(
                    f"Attempt {attempt.attempt_number} already recorded for {attempt.assessment_id}",
                    field="attempt_number",
                ) from exc
        return attempt

    async def update_attempt(self, attempt: AssessmentAttempt) -> AssessmentAttempt:
        payload = attempt.model_dump(mode="json")
        async with self._session_factory() as db:
            row = (await db.execute(
                select(AssessmentAttemptRow).where(
                    AssessmentAttemptRow.learner_id == attempt.learner_id,
                    AssessmentAttemptRow.assessment_id == attempt.assessment_id,
                    AssessmentAttemptRow.attempt_number == attempt.attempt_number,
                )
            )).scalar_one_or_none()
            if row is None:
                raise KeyError((attempt.learner_id, attempt.assessment_id, attempt.attempt_number))
            row.answers = payload["answers"]
            row.score = attempt.score
            row.points_earned = attempt.points_earned
            row.passed = attempt.passed
            row.grading_status = attempt.grading_status
            row.feedback = payload["feedback"]
            await db.commit()
        return attempt

    async def save_session(self, session: AttemptSession) -> AttemptSession:
        answers = session.model_dump(mode="json")["answers"]
        async with self._session_factory() as db:
            row = await db.get(AttemptSessionRow, (session.learner_id, session.assessment_id))
            if row is None:
                row = AttemptSessionRow(learner_id=session.learner_id, assessment_id=session.assessment_id)
                db.add(row)
            row.attempt_number = session.attempt_number
            row.started_at = session.started_at
            row.deadline = session.deadline
            row.answers = answers
            await db.commit()
        return session

    async def get_session(self, learner_id: str, assessment_id: str) -> AttemptSession | None:
        async with self._session_factory() as db:
            row = await db.get(AttemptSessionRow, (learner_id, assessment_id))
            return _session_from_row(row) if row else None

    async def delete_session(self, learner_id: str, assessment_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                delete(AttemptSessionRow).where(
                    AttemptSessionRow.learner_id == learner_id,
                    AttemptSessionRow.assessment_id == assessment_id,
                )
            )
            await db.commit()

    async def list_sessions(self) -> list[AttemptSession]:
        async with self._session_factory() as db:
            rows = (await db.execute(select(AttemptSessionRow))).scalars().all()
            return [_session_from_row(r) for r in rows]

    async def get_roadmap(self, learner_id: str) -> Roadmap | None:
        async with self._session_factory() as db:
            row = await db.get(RoadmapRow, learner_id)
            return _roadmap_from_row(row) if row else None

    async def replace_roadmap(self, roadmap: Roadmap, expected_version: int | None) -> Roadmap:
        new_version = (expected_version or 0) + 1
        items = roadmap.model_dump(mode="json")["items"]
        async with self._session_factory() as db:
            if expected_version is None:
                db.add(RoadmapRow(
                    learner_id=roadmap.learner_id,
                    status=roadmap.status,
                    source=roadmap.source,
                    items=items,
                    reasoning=roadmap.reasoning,
                    generated_at=roadmap.generated_at,
                    updated_at=roadmap.updated_at,
                    version=new_version,
                ))
                try:
                    await db.commit()
                except IntegrityError as exc:
                    await db.rollback()
                    raise self._conflict(roadmap.learner_id, expected_version) from exc
            else:
                result = await db.execute(
                    update(RoadmapRow)
                    .where(RoadmapRow.learner_id == roadmap.learner_id, RoadmapRow.version == expected_version)
                    .values(
                        status=roadmap.status,
                        source=roadmap.source,
                        items=items,
                        reasoning=roadmap.reasoning,
                        generated_at=roadmap.generated_at,
                        updated_at=roadmap.updated_at,
                        version=new_version,
                    )
                )
                if result.rowcount == 0:
                    await db.rollback()
                    raise self._conflict(roadmap.learner_id, expected_version)
                await db.commit()
        return roadmap.model_copy(update={"version": new_version}, deep=True)

    @staticmethod
    def _conflict(learner_id: str, expected_version: int | None) -> ConcurrencyConflictError:
        logger.info("Roadmap version conflict for learner=%s expected=%s", learner_id, expected_version)
        return ConcurrencyConflictError(
            f"Roadmap for {learner_id} changed concurrently",
            details={"expected_version": expected_version},
        )
