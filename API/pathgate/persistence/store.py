from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from pathgate.core.errors import ConcurrencyConflictError, DuplicateAttemptError
from pathgate.schemas.attempts import AssessmentAttempt, AttemptSession
from pathgate.schemas.progress import Learner, ProgressRecord
from pathgate.schemas.roadmap import Roadmap

logger = logging.getLogger(__name__)


class ProgressStore(ABC):
    """Persistence for learners, progress records, attempts and roadmaps.

    Implementations enforce the (assessment_id, learner_id, attempt_number)
    uniqueness, gap-free attempt numbering, and versioned roadmap replacement.
    """

    @abstractmethod
    async def get_learner(self, learner_id: str) -> Learner | None:
        raise NotImplementedError

    @abstractmethod
    async def save_learner(self, learner: Learner) -> Learner:
        raise NotImplementedError

    @abstractmethod
    async def get_progress(self, learner_id: str, content_id: str) -> ProgressRecord | None:
        raise NotImplementedError

    @abstractmethod
    async def upsert_progress(self, record: ProgressRecord) -> ProgressRecord:
        raise NotImplementedError

    @abstractmethod
    async def list_progress(self, learner_id: str) -> list[ProgressRecord]:
        raise NotImplementedError

    @abstractmethod
    async def list_attempts(self, learner_id: str, assessment_id: str | None = None) -> list[AssessmentAttempt]:
        raise NotImplementedError

    @abstractmethod
    async def insert_attempt(self, attempt: AssessmentAttempt) -> AssessmentAttempt:
        raise NotImplementedError

    @abstractmethod
    async def update_attempt(self, attempt: AssessmentAttempt) -> AssessmentAttempt:
        raise NotImplementedError

    @abstractmethod
    async def save_session(self, session: AttemptSession) -> AttemptSession:
        raise NotImplementedError

    @abstractmethod
    async def get_session(self, learner_id: str, assessment_id: str) -> AttemptSession | None:
        raise NotImplementedError

    @abstractmethod
    async def delete_session(self, learner_id: str, assessment_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_sessions(self) -> list[AttemptSession]:
        raise NotImplementedError

    @abstractmethod
    async def get_roadmap(self, learner_id: str) -> Roadmap | None:
        raise NotImplementedError

    @abstractmethod
    async def replace_roadmap(self, roadmap: Roadmap, expected_version: int | None) -> Roadmap:
        """Atomically store ``roadmap`` if the stored version equals ``expected_version``.

        ``expected_version=None`` means no roadmap may exist yet. The stored copy
        gets ``version = expected_version + 1`` (or 1 on first insert).
        """
        raise NotImplementedError


class InMemoryProgressStore(ProgressStore):
    def __init__(self):
        self._learners: dict[str, Learner] = {}
        self._progress: dict[tuple[str, str], ProgressRecord] = {}
        self._attempts: dict[tuple[str, str], list[AssessmentAttempt]] = {}
        self._sessions: dict[tuple[str, str], AttemptSession] = {}
        self._roadmaps: dict[str, Roadmap] = {}

    async def get_learner(self, learner_id: str) -> Learner | None:
        learner = self._learners.get(learner_id)
        return learner.model_copy(deep=True) if learner else None

    async def save_learner(self, learner: Learner) -> Learner:
        self._learners[learner.id] = learner.model_copy(deep=True)
        return learner

    async def get_progress(self, learner_id: str, content_id: str) -> ProgressRecord | None:
        record = self._progress.get((learner_id, content_id))
        return record.model_copy(deep=True) if record else None

    async def upsert_progress(self, record: ProgressRecord) -> ProgressRecord:
        stored = record.model_copy(update={"version": record.version + 1}, deep=True)
        self._progress[(record.learner_id, record.content_id)] = stored
        return stored.model_copy(deep=True)

    async def list_progress(self, learner_id: str) -> list[ProgressRecord]:
        return [r.model_copy(deep=True) for (lid, _), r in self._progress.items() if lid == learner_id]

    async def list_attempts(self, learner_id: str, assessment_id: str | None = None) -> list[AssessmentAttempt]:
        out: list[AssessmentAttempt] = []
        for (lid, aid), attempts in self._attempts.items():
            if lid == learner_id and (assessment_id is None or aid == assessment_id):
                out.extend(a.model_copy(deep=True) for a in attempts)
        return sorted(out, key=lambda a: (a.assessment_id, a.attempt_number))

    async def insert_attempt(self, attempt: AssessmentAttempt) -> AssessmentAttempt:
        key = (attempt.learner_id, attempt.assessment_id)
        existing = self._attempts.setdefault(key, [])
        if any(a.attempt_number == attempt.attempt_number for a in existing):
            raise DuplicateAttemptError(
                f"Attempt {attempt.attempt_number} already recorded for {attempt.assessment_id}",
                field="attempt_number",
            )
        if attempt.attempt_number != len(existing) + 1:
            raise DuplicateAttemptError(
                f"Attempt number {attempt.attempt_number} out of sequence (expected {len(existing) + 1})",
                field="attempt_number",
            )
        existing.append(attempt.model_copy(deep=True))
        return attempt

    async def update_attempt(self, attempt: AssessmentAttempt) -> AssessmentAttempt:
        attempts = self._attempts.get((attempt.learner_id, attempt.assessment_id), [])
        for index, current in enumerate(attempts):
            if current.attempt_number == attempt.attempt_number:
                attempts[index] = attempt.model_copy(deep=True)
                return attempt
        raise KeyError((attempt.learner_id, attempt.assessment_id, attempt.attempt_number))

    async def save_session(self, session: AttemptSession) -> AttemptSession:
        self._sessions[(session.learner_id, session.assessment_id)] = session.model_copy(deep=True)
        return session

    async def get_session(self, learner_id: str, assessment_id: str) -> AttemptSession | None:
        session = self._sessions.get((learner_id, assessment_id))
        return session.model_copy(deep=True) if session else None

    async def delete_session(self, learner_id: str, assessment_id: str) -> None:
        self._sessions.pop((learner_id, assessment_id), None)

    async def list_sessions(self) -> list[AttemptSession]:
        return [s.model_copy(deep=True) for s in self._sessions.values()]

    async def get_roadmap(self, learner_id: str) -> Roadmap | None:
        roadmap = self._roadmaps.get(learner_id)
        return roadmap.model_copy(deep=True) if roadmap else None

    async def replace_roadmap(self, roadmap: Roadmap, expected_version: int | None) -> Roadmap:
        current = self._roadmaps.get(roadmap.learner_id)
        current_version = current.version if current else None
        if current_version != expected_version:
            logger.info(
                "Roadmap version conflict for learner=%s expected=%s actual=%s",
                roadmap.learner_id, expected_version, current_version,
            )
            raise ConcurrencyConflictError(
                f"Roadmap for {roadmap.learner_id} changed concurrently",
                details={"expected_version": expected_version, "actual_version": current_version},
            )
        stored = roadmap.model_copy(update={"version": (expected_version or 0) + 1}, deep=True)
        self._roadmaps[roadmap.learner_id] = stored
        return stored.model_copy(deep=True)
