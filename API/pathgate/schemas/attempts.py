from __future__ import annotations

from datetime import datetime
from typing import Literal, Union

from pydantic import BaseModel, Field

AnswerStatus = Literal["correct", "incorrect", "unanswered", "pending_manual_grade", "manually_graded"]
GradingStatus = Literal["graded", "pending_manual_grade"]

AnswerValue = Union[bool, str]


class SubmittedAnswer(BaseModel):
    question_id: str
    response: AnswerValue | None = None


class GradedAnswer(BaseModel):
    question_id: str
    response: AnswerValue | None = None
    status: AnswerStatus
    points_earned: float = 0.0
    points_possible: float
    feedback: str | None = None

    @property
    def is_correct(self) -> bool:
        return self.status == "correct" or (
            self.status == "manually_graded" and self.points_earned >= self.points_possible
        )


class AttemptFeedback(BaseModel):
    overall_feedback: str
    strengths: list[str] = Field(default_factory=list)
    areas_for_improvement: list[str] = Field(default_factory=list)
    recommended_resources: list[str] = Field(default_factory=list)
    next_steps: str = ""


class AssessmentAttempt(BaseModel):
    assessment_id: str
    learner_id: str
    attempt_number: int = Field(ge=1)
    answers: list[GradedAnswer]
    score: int = Field(ge=0, le=100)
    points_earned: float
    total_points: float
    passed: bool
    grading_status: GradingStatus = "graded"
    time_spent: int = Field(default=0, ge=0)  # seconds
    time_expired: bool = False
    started_at: datetime
    submitted_at: datetime
    feedback: AttemptFeedback | None = None


class AttemptSession(BaseModel):
    """An open timed attempt; finalized only by submit or deadline expiry."""

    assessment_id: str
    learner_id: str
    attempt_number: int
    started_at: datetime
    deadline: datetime | None = None
    answers: list[SubmittedAnswer] = Field(default_factory=list)


class SubmissionResult(BaseModel):
    attempt: AssessmentAttempt
    redirected_to_existing: bool = False
    newly_unlocked: list[str] = Field(default_factory=list)
    roadmap_error: str | None = None  # error code when roadmap upkeep failed after the attempt was stored


class AttemptStart(BaseModel):
    """Outcome of starting a timed attempt.

    ``finalized`` holds an expired session that was submitted on the way in.
    ``existing`` is set instead of ``session`` when the attempt limit is reached
    and an earlier attempt passed.
    """

    session: AttemptSession | None = None
    finalized: SubmissionResult | None = None
    existing: SubmissionResult | None = None


class ManualGrade(BaseModel):
    question_id: str
    points_earned: float = Field(ge=0)
    feedback: str | None = None


class KnowledgeGap(BaseModel):
    topic: str
    proficiency: float  # 0..1 share of points earned on the topic
    questions_seen: int


class StartAttemptRequest(BaseModel):
    learner_id: str


class SaveAnswersRequest(BaseModel):
    learner_id: str
    answers: list[SubmittedAnswer]


class SubmitAttemptRequest(BaseModel):
    learner_id: str
    answers: list[SubmittedAnswer] = Field(default_factory=list)
    time_spent: int = Field(default=0, ge=0)
    attempt_number: int | None = Field(default=None, ge=1)


class ManualGradeRequest(BaseModel):
    learner_id: str
    grades: list[ManualGrade] = Field(min_length=1)
