"""Roadmap engine: personalized learning paths with an advisor and a deterministic fallback.

Advisor failures never reach the caller. ``ResilientAdvisor`` hands back an
``Err`` and the engine switches to the fallback generator, which only needs the
content catalog and progress records.
"""
from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable

from pathgate.content.catalog import ContentCatalog
from pathgate.core.advisor import ResilientAdvisor
from pathgate.core.errors import ConcurrencyConflictError, NotFoundError, ValidationError
from pathgate.core.event_bus import EVENT_ROADMAP_UPDATED, EventBus
from pathgate.core.logging import DOMAIN_ROADMAP, get_domain_logger
from pathgate.core.result import ERR_INVALID_RESPONSE, Err
from pathgate.persistence.store import ProgressStore
from pathgate.schemas.content import AssessmentNode, CourseNode, LessonNode
from pathgate.schemas.progress import Learner, utcnow
from pathgate.schemas.roadmap import (
    FALLBACK_NOTE,
    AdaptTrigger,
    AdvisorRequest,
    AdvisorResponse,
    LearnerProfilePayload,
    LearningPathItem,
    Roadmap,
    RoadmapStatus,
)
from pathgate.services.assessment import AssessmentEngine
from pathgate.services.progression import ProgressionGate

logger = get_domain_logger(__name__, DOMAIN_ROADMAP)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "generating": {"active"},
    "active": {"paused", "completed"},
    "paused": {"active"},
    "completed": set(),
}

Mutation = Callable[[Roadmap | None], Awaitable[Roadmap | None]]


class RoadmapEngine:
    def __init__(
        self,
        catalog: ContentCatalog,
        store: ProgressStore,
        gate: ProgressionGate,
        assessments: AssessmentEngine,
        advisor: ResilientAdvisor,
        events: EventBus | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.store = store
        self.gate = gate
        self.assessments = assessments
        self.advisor = advisor
        self.events = events
        self.clock = clock

    # -- persistence ------------------------------------------------------

    async def _commit(self, learner_id: str, mutate: Mutation) -> Roadmap | None:
        """Apply ``mutate`` to fresh state and replace atomically; one retry on a version conflict."""
        for attempt in range(2):
            current = await self.store.get_roadmap(learner_id)
            updated = await mutate(current)
            if updated is None:
                return current
            updated.updated_at = self.clock()
            try:
                saved = await self.store.replace_roadmap(updated, current.version if current else None)
            except ConcurrencyConflictError:
                if attempt == 0:
                    logger.info("Roadmap conflict for learner=%s; retrying against fresh state", learner_id)
                    continue
                raise
            if self.events is not None:
                await self.events.publish(
                    EVENT_ROADMAP_UPDATED,
                    "roadmap_engine",
                    {"learner_id": learner_id, "status": saved.status, "version": saved.version, "source": saved.source},
                )
            return saved
        return None

    # -- queries ----------------------------------------------------------

    async def get_active(self, learner_id: str) -> Roadmap:
        await self.gate.require_learner(learner_id)
        roadmap = await self.store.get_roadmap(learner_id)
        if roadmap is None:
            raise NotFoundError("roadmap", learner_id)
        return roadmap

    # -- generation -------------------------------------------------------

    async def generate(
        self,
        learner_id: str,
        enrolled_content: list[str] | None = None,
        *,
        force: bool = False,
    ) -> Roadmap:
        learner = await self.gate.require_learner(learner_id)
        enrolled = list(enrolled_content) if enrolled_content else list(learner.enrolled_course_ids)
        for content_id in enrolled:
            self.catalog.get_content(content_id)

        existing = await self.store.get_roadmap(learner_id)
        if existing is not None and existing.status == "active" and not force:
            return existing

        now = self.clock()

        async def _mark_generating(current: Roadmap | None) -> Roadmap:
            if current is None:
                return Roadmap(learner_id=learner_id, status="generating", generated_at=now, updated_at=now)
            return current.model_copy(update={"status": "generating"})

        await self._commit(learner_id, _mark_generating)

        request = await self._advisor_request(learner, enrolled)
        result = await self.advisor.recommend(request)
        items = None
        reasoning = ""
        if result.ok:
            items = await self._items_from_advisor(learner_id, result.value)
            if items is None:
                result = Err(ERR_INVALID_RESPONSE, "advisor path failed validation")
            else:
                reasoning = result.value.reasoning
        if items is None:
            logger.warning(
                "Using fallback roadmap for learner=%s | advisor error kind=%s | %s",
                learner_id, result.kind, result.message,
            )
            items = await self._fallback_items(learner_id, enrolled)
            reasoning = f"Recommendation advisor unavailable ({result.kind}); using default course order."
        source = "advisor" if result.ok else "fallback"

        async def _activate(current: Roadmap | None) -> Roadmap:
            return Roadmap(
                learner_id=learner_id,
                status="completed" if items and all(i.completion_status == "completed" for i in items) else "active",
                items=items,
                reasoning=reasoning,
                source=source,
                generated_at=now,
                updated_at=now,
                version=current.version if current else 0,
            )

        roadmap = await self._commit(learner_id, _activate)
        logger.info(
            "Generated roadmap for learner=%s source=%s items=%s version=%s",
            learner_id, roadmap.source, len(roadmap.items), roadmap.version,
        )
        return roadmap

    async def _advisor_request(self, learner: Learner, enrolled: list[str]) -> AdvisorRequest:
        completed = [r.content_id for r in await self.store.list_progress(learner.id) if r.status == "completed"]
        gaps = await self.assessments.knowledge_gaps(learner.id)
        return AdvisorRequest(
            learner_profile=LearnerProfilePayload(
                learner_id=learner.id,
                learning_preferences=learner.learning_preferences,
                completed_content=sorted(completed),
            ),
            knowledge_gaps=[g.topic for g in gaps],
            enrolled_content=enrolled,
        )

    def validate_path(self, response: AdvisorResponse) -> str | None:
        """Return a reason when the advisor's path is unusable, else None."""
        if not response.learning_path:
            return "empty learning path"
        seen: set[str] = set()
        path_ids = {entry.content_id for entry in response.learning_path}
        for entry in response.learning_path:
            if entry.content_id not in self.catalog:
                return f"unknown content id {entry.content_id}"
            if entry.content_id in seen:
                return f"duplicate content id {entry.content_id}"
            for prereq in self.catalog.list_prerequisites(entry.content_id):
                if prereq in path_ids and prereq not in seen:
                    return f"{entry.content_id} is placed before its prerequisite {prereq}"
            seen.add(entry.content_id)
        return None

    async def _items_from_advisor(self, learner_id: str, response: AdvisorResponse) -> list[LearningPathItem] | None:
        reason = self.validate_path(response)
        if reason is not None:
            logger.warning("Rejected advisor path for learner=%s: %s", learner_id, reason)
            return None
        items = []
        for index, entry in enumerate(response.learning_path):
            node = self.catalog.get_content(entry.content_id)
            items.append(
                LearningPathItem(
                    content_id=node.id,
                    content_kind=node.kind,
                    title=node.title,
                    order_index=index,
                    prerequisites=list(node.prerequisites),
                    estimated_time=entry.estimated_time if entry.estimated_time is not None else node.estimated_duration,
                    personalization_note=entry.personalization_note,
                )
            )
        return await self._refresh(learner_id, items)

    def fallback_sequence(self, enrolled: list[str]) -> list[str]:
        """Deterministic order: courses by declared order, each lesson followed by its mandatory assessment."""
        courses: list[CourseNode] = []
        loose: list[str] = []
        for content_id in enrolled:
            node = self.catalog.get_content(content_id)
            if isinstance(node, CourseNode):
                courses.append(node)
            else:
                loose.append(content_id)

        sequence: list[str] = []

        def _add(content_id: str | None) -> None:
            if content_id and content_id not in sequence:
                sequence.append(content_id)

        for course in sorted(courses, key=lambda c: (c.order_index, c.id)):
            for lesson in self.catalog.lessons_for_course(course.id):
                _add(lesson.id)
                _add(lesson.mandatory_assessment_id)
            _add(course.mandatory_assessment_id)
        for content_id in loose:
            node = self.catalog.get_content(content_id)
            _add(content_id)
            if isinstance(node, LessonNode):
                _add(node.mandatory_assessment_id)
        return sequence

    async def _fallback_items(self, learner_id: str, enrolled: list[str]) -> list[LearningPathItem]:
        items = []
        for index, content_id in enumerate(self.fallback_sequence(enrolled)):
            node = self.catalog.get_content(content_id)
            items.append(
                LearningPathItem(
                    content_id=node.id,
                    content_kind=node.kind,
                    title=node.title,
                    order_index=index,
                    estimated_time=node.estimated_duration,
                    personalization_note=FALLBACK_NOTE,
                )
            )
        return await self._refresh(learner_id, items)

    async def _refresh(self, learner_id: str, items: list[LearningPathItem]) -> list[LearningPathItem]:
        """Sync completion from progress records and unlock flags from the gate."""
        progress = {r.content_id: r for r in await self.store.list_progress(learner_id)}
        for item in items:
            if item.is_remedial:
                continue
            record = progress.get(item.content_id)
            if record is not None and record.status in {"completed", "in_progress"} and item.completion_status != "failed":
                item.completion_status = record.status
        await self._apply_unlocks(learner_id, items, {i.content_id for i in items})
        return items

    async def _apply_unlocks(self, learner_id: str, items: list[LearningPathItem], content_ids: set[str]) -> None:
        decisions: dict[str, bool] = {}
        for item in items:
            if item.content_id not in content_ids:
                continue
            if item.content_id not in decisions:
                decisions[item.content_id] = (await self.gate.can_access(learner_id, item.content_id)).allowed
            item.is_unlocked = decisions[item.content_id] and not item.held_by

    # -- adaptation -------------------------------------------------------

    async def adapt(self, learner_id: str, trigger: AdaptTrigger, content_id: str) -> Roadmap | None:
        await self.gate.require_learner(learner_id)
        self.catalog.get_content(content_id)
        if await self.store.get_roadmap(learner_id) is None:
            logger.info("No roadmap to adapt for learner=%s (trigger=%s)", learner_id, trigger)
            return None

        async def _mutate(current: Roadmap | None) -> Roadmap | None:
            if current is None:
                return None
            roadmap = current.model_copy(deep=True)
            if trigger == "assessment_failed":
                await self._insert_remedial(learner_id, roadmap, content_id)
            else:
                await self._mark_completed(learner_id, roadmap, content_id, trigger)
            for index, item in enumerate(roadmap.items):
                item.order_index = index
            if roadmap.items and all(i.completion_status == "completed" for i in roadmap.items):
                roadmap.status = "completed"
            return roadmap

        roadmap = await self._commit(learner_id, _mutate)
        logger.info(
            "Adapted roadmap for learner=%s trigger=%s content=%s version=%s",
            learner_id, trigger, content_id, roadmap.version if roadmap else None,
        )
        return roadmap

    async def sync_progress(self, learner_id: str, content_id: str) -> Roadmap | None:
        """Mirror a progress change that did not complete ``content_id``.

        The item's status follows its progress record and unlock flags are
        re-checked for it and its direct dependents. Failed and remedial items
        keep their state.
        """
        await self.gate.require_learner(learner_id)
        self.catalog.get_content(content_id)
        if await self.store.get_roadmap(learner_id) is None:
            return None
        recheck = {content_id, *self.catalog.list_dependents(content_id)}

        async def _mutate(current: Roadmap | None) -> Roadmap | None:
            if current is None:
                return None
            record = await self.store.get_progress(learner_id, content_id)
            status = record.status if record is not None else "not_started"
            roadmap = current.model_copy(deep=True)
            for item in roadmap.items:
                if item.content_id == content_id and not item.is_remedial and item.completion_status != "failed":
                    item.completion_status = status
            await self._apply_unlocks(learner_id, roadmap.items, recheck)
            return None if roadmap.items == current.items else roadmap

        roadmap = await self._commit(learner_id, _mutate)
        logger.info("Synced roadmap for learner=%s after progress on %s", learner_id, content_id)
        return roadmap

    def _remedial_targets(self, failing: list[str], content_id: str) -> list[str]:
        targets = list(failing)
        node = self.catalog.get_content(content_id)
        if isinstance(node, AssessmentNode):
            owner_id = self.catalog.owner_of(content_id)
            if owner_id and owner_id not in targets and not isinstance(self.catalog.get_content(owner_id), CourseNode):
                targets.append(owner_id)
        return targets

    async def _insert_remedial(self, learner_id: str, roadmap: Roadmap, content_id: str) -> None:
        position = next((i for i, item in enumerate(roadmap.items) if item.content_id == content_id and not item.is_remedial), None)
        if position is None:
            logger.info("Failed content %s is not on learner=%s roadmap; nothing to adapt", content_id, learner_id)
            return
        decision = await self.gate.can_access(learner_id, content_id)
        targets = self._remedial_targets(decision.failing_prerequisites, content_id)
        failed = roadmap.items[position]

        already_queued = {
            item.content_id for item in roadmap.items[:position]
            if item.is_remedial and item.completion_status != "completed"
        }
        new_items = []
        for target in targets:
            if target in already_queued:
                continue
            node = self.catalog.get_content(target)
            new_items.append(
                LearningPathItem(
                    content_id=node.id,
                    content_kind=node.kind,
                    title=node.title,
                    order_index=0,
                    prerequisites=list(node.prerequisites),
                    estimated_time=node.estimated_duration,
                    is_unlocked=True,
                    personalization_note=f"Review {node.title or node.id} before retrying {failed.title or failed.content_id}",
                    is_remedial=True,
                )
            )
        roadmap.items[position:position] = new_items
        await self._apply_unlocks(learner_id, new_items, {i.content_id for i in new_items})

        failed.completion_status = "failed"
        failed.held_by = sorted(set(failed.held_by) | already_queued | {i.content_id for i in new_items})
        failed.is_unlocked = False
        logger.info(
            "Inserted %s remedial item(s) before %s for learner=%s",
            len(new_items), content_id, learner_id,
        )

    async def _mark_completed(self, learner_id: str, roadmap: Roadmap, content_id: str, trigger: str) -> None:
        completed_ids = {content_id}
        if trigger == "assessment_passed" and isinstance(self.catalog.get_content(content_id), AssessmentNode):
            owner_id = self.catalog.owner_of(content_id)
            if owner_id:
                completed_ids.add(owner_id)

        for item in roadmap.items:
            if item.content_id in completed_ids:
                item.completion_status = "completed"
                item.held_by = []

        released: set[str] = set()
        for item in roadmap.items:
            if item.held_by:
                remaining = [h for h in item.held_by if h not in completed_ids]
                if len(remaining) != len(item.held_by):
                    item.held_by = remaining
                    released.add(item.content_id)

        recheck = set(released)
        for done in completed_ids:
            recheck.update(self.catalog.list_dependents(done))
        recheck.update(completed_ids)
        await self._apply_unlocks(learner_id, roadmap.items, recheck)

    # -- lifecycle ----------------------------------------------------------

    async def set_status(self, learner_id: str, status: RoadmapStatus) -> Roadmap:
        current = await self.get_active(learner_id)
        if current.status == status:
            return current
        if status not in ALLOWED_TRANSITIONS.get(current.status, set()):
            raise ValidationError(
                f"Cannot move roadmap from {current.status} to {status}",
                field="status",
                details={"from": current.status, "to": status},
            )

        async def _mutate(fresh: Roadmap | None) -> Roadmap:
            if fresh is None:
                raise NotFoundError("roadmap", learner_id)
            if status not in ALLOWED_TRANSITIONS.get(fresh.status, set()) and fresh.status != status:
                raise ValidationError(f"Cannot move roadmap from {fresh.status} to {status}", field="status")
            return fresh.model_copy(update={"status": status})

        roadmap = await self._commit(learner_id, _mutate)
        logger.info("Roadmap for learner=%s moved %s -> %s", learner_id, current.status, status)
        return roadmap
