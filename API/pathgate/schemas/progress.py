from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

ProgressStatus = Literal["not_started", "in_progress", "completed"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Learner(BaseModel):
    id: str = Field(min_length=1)
    display_name: str = ""
    learning_preferences: dict = Field(default_factory=dict)
    enrolled_course_ids: list[str] = Field(default_factory=list)


class ProgressRecord(BaseModel):
    learner_id: str
    content_id: str
    status: ProgressStatus = "not_started"
    completion_percentage: float = Field(default=0.0, ge=0, le=100)
    time_spent: int = Field(default=0, ge=0)  # seconds
    attempts_count: int = Field(default=0, ge=0)
    best_score: int | None = Field(default=None, ge=0, le=100)
    last_accessed: datetime | None = None
    version: int = 0


class PrerequisiteStatus(BaseModel):
    content_id: str
    kind: str
    title: str
    completed: bool
    assessment_id: str | None = None
    assessment_passed: bool | None = None
    best_score: int | None = None
    required_score: int | None = None

    @property
    def satisfied(self) -> bool:
        return self.completed and self.assessment_passed is not False


class AccessDecision(BaseModel):
    """Transient gate answer. Never persisted as a progress status."""

    learner_id: str
    content_id: str
    allowed: bool
    blocked_by: str | None = None
    failing_prerequisites: list[str] = Field(default_factory=list)
    prerequisites: list[PrerequisiteStatus] = Field(default_factory=list)


class ProgressUpdate(BaseModel):
    status: ProgressStatus
    completion_percentage: float | None = None
    time_spent: int | None = None


class ProgressChange(BaseModel):
    record: ProgressRecord
    newly_unlocked: list[str] = Field(default_factory=list)
    roadmap_error: str | None = None


class LessonOverview(BaseModel):
    lesson_id: str
    title: str
    status: ProgressStatus
    allowed: bool
    blocked_by: str | None = None
    assessment_id: str | None = None
    assessment_passed: bool | None = None


class CourseOverview(BaseModel):
    learner_id: str
    course_id: str
    overall_progress: int
    total_lessons: int
    completed_lessons: int
    lessons: list[LessonOverview]
    final_assessment_passed: bool | None = None
    is_completed: bool
