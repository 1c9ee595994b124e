from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from pathgate.models.base import Base

JsonType = JSON().with_variant(JSONB(), "postgresql")


class LearnerRow(Base):
    __tablename__ = "learners"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    learning_preferences: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    enrolled_course_ids: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProgressRecordRow(Base):
    __tablename__ = "progress_records"
    __table_args__ = (Index("idx_progress_records_learner", "learner_id"),)

    learner_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    content_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="not_started")
    completion_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    time_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    best_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_accessed: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AssessmentAttemptRow(Base):
    __tablename__ = "assessment_attempts"
    __table_args__ = (
        UniqueConstraint("assessment_id", "learner_id", "attempt_number", name="uq_attempt_number"),
        Index("idx_assessment_attempts_learner_assessment", "learner_id", "assessment_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[str] = mapped_column(String(128), nullable=False)
    learner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    answers: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    points_earned: Mapped[float] = mapped_column(Float, nullable=False)
    total_points: Mapped[float] = mapped_column(Float, nullable=False)
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    grading_status: Mapped[str] = mapped_column(String(32), nullable=False, default="graded")
    time_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    time_expired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    feedback: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AttemptSessionRow(Base):
    __tablename__ = "attempt_sessions"

    learner_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    assessment_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    answers: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)


class RoadmapRow(Base):
    __tablename__ = "roadmaps"
    __table_args__ = (Index("idx_roadmaps_status", "status"),)

    learner_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="generating")
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="fallback")
    items: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
