from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

ContentKind = Literal["course", "lesson", "assessment"]


class _QuestionBase(BaseModel):
    id: str = Field(min_length=1)
    prompt: str = ""
    points: float = Field(gt=0)
    difficulty: int = Field(default=1, ge=1, le=5)
    topics: list[str] = Field(default_factory=list)


class MultipleChoiceQuestion(_QuestionBase):
    type: Literal["multiple_choice"] = "multiple_choice"
    options: list[str] = Field(min_length=2)
    correct_answer: str

    @model_validator(mode="after")
    def _answer_is_an_option(self):
        if self.correct_answer not in self.options:
            raise ValueError(f"correct_answer for question {self.id} is not one of its options")
        return self


class TrueFalseQuestion(_QuestionBase):
    type: Literal["true_false"] = "true_false"
    correct_answer: bool


class ShortAnswerQuestion(_QuestionBase):
    type: Literal["short_answer"] = "short_answer"
    acceptable_answers: list[str] = Field(min_length=1)


class EssayQuestion(_QuestionBase):
    type: Literal["essay"] = "essay"
    rubric: str | None = None


Question = Annotated[
    Union[MultipleChoiceQuestion, TrueFalseQuestion, ShortAnswerQuestion, EssayQuestion],
    Field(discriminator="type"),
]


class _NodeBase(BaseModel):
    id: str = Field(min_length=1)
    title: str = ""
    prerequisites: list[str] = Field(default_factory=list)
    mandatory_assessment_id: str | None = None
    estimated_duration: int = Field(default=60, ge=0)  # minutes
    topics: list[str] = Field(default_factory=list)

    @field_validator("prerequisites")
    @classmethod
    def _no_duplicate_prerequisites(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            raise ValueError("prerequisites must not repeat")
        return value


class CourseNode(_NodeBase):
    kind: Literal["course"] = "course"
    order_index: int = 0


class LessonNode(_NodeBase):
    kind: Literal["lesson"] = "lesson"
    course_id: str
    order_index: int = 0


class AssessmentNode(_NodeBase):
    kind: Literal["assessment"] = "assessment"
    owner_id: str | None = None  # lesson or course the assessment gates
    questions: list[Question] = Field(min_length=1)
    minimum_passing_score: int = Field(default=70, ge=0, le=100)
    max_attempts: int | None = Field(default=None, ge=1)
    time_limit: int | None = Field(default=None, ge=1)  # minutes

    @model_validator(mode="after")
    def _unique_question_ids(self):
        ids = [q.id for q in self.questions]
        if len(set(ids)) != len(ids):
            raise ValueError(f"assessment {self.id} has duplicate question ids")
        return self

    @property
    def total_points(self) -> float:
        return sum(q.points for q in self.questions)

    def question(self, question_id: str):
        for q in self.questions:
            if q.id == question_id:
                return q
        return None


ContentNode = Annotated[Union[CourseNode, LessonNode, AssessmentNode], Field(discriminator="kind")]


class CatalogDocument(BaseModel):
    nodes: list[ContentNode]
