from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, computed_field

RoadmapStatus = Literal["generating", "active", "paused", "completed"]
ItemStatus = Literal["not_started", "in_progress", "completed", "failed"]
AdaptTrigger = Literal["assessment_failed", "assessment_passed", "content_completed"]
RoadmapSource = Literal["advisor", "fallback"]

FALLBACK_NOTE = "Generated by fallback system"


class LearningPathItem(BaseModel):
    content_id: str
    content_kind: str = "lesson"
    title: str = ""
    order_index: int = Field(ge=0)
    prerequisites: list[str] = Field(default_factory=list)
    estimated_time: int = Field(default=0, ge=0)  # minutes
    completion_status: ItemStatus = "not_started"
    is_unlocked: bool = False
    personalization_note: str = ""
    is_remedial: bool = False
    held_by: list[str] = Field(default_factory=list)  # remedial content ids that must complete first


class Roadmap(BaseModel):
    learner_id: str
    status: RoadmapStatus = "generating"
    items: list[LearningPathItem] = Field(default_factory=list)
    reasoning: str = ""
    source: RoadmapSource = "fallback"
    generated_at: datetime
    updated_at: datetime
    version: int = 0

    @computed_field
    @property
    def total_estimated_time(self) -> int:
        return sum(item.estimated_time for item in self.items)


class LearnerProfilePayload(BaseModel):
    learner_id: str
    learning_preferences: dict = Field(default_factory=dict)
    completed_content: list[str] = Field(default_factory=list)


class AdvisorRequest(BaseModel):
    learner_profile: LearnerProfilePayload
    knowledge_gaps: list[str] = Field(default_factory=list)
    enrolled_content: list[str] = Field(default_factory=list)


class AdvisorPathEntry(BaseModel):
    content_id: str
    estimated_time: int | None = Field(default=None, ge=0)
    personalization_note: str = ""


class AdvisorResponse(BaseModel):
    learning_path: list[AdvisorPathEntry]
    reasoning: str = ""


class GenerateRoadmapRequest(BaseModel):
    enrolled_content: list[str] | None = None
    force: bool = False


class AdaptRoadmapRequest(BaseModel):
    trigger: AdaptTrigger
    content_id: str


class RoadmapStatusRequest(BaseModel):
    status: Literal["active", "paused", "completed"]
