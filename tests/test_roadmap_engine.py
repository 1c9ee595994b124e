from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from pathgate.content.catalog import ContentCatalog
from pathgate.core.errors import ConcurrencyConflictError, NotFoundError, ValidationError
from pathgate.core.event_bus import EVENT_CONTENT_UNLOCKED, EVENT_ROADMAP_UPDATED
from pathgate.core.settings import Settings
from pathgate.persistence.store import InMemoryProgressStore
from pathgate.schemas.attempts import SubmittedAnswer
from pathgate.schemas.progress import Learner, ProgressUpdate
from pathgate.schemas.roadmap import FALLBACK_NOTE
from pathgate.services.container import build_container

FALLBACK_ORDER = ["py-101-l1", "py-101-a1", "py-101-l2", "py-101-a2", "py-101-l3"]


def _a1(passing: bool) -> list[SubmittedAnswer]:
    return [
        SubmittedAnswer(question_id="q1", response="total_2" if passing else "2total"),
        SubmittedAnswer(question_id="q2", response=True),
        SubmittedAnswer(question_id="q3", response="type" if passing else "len"),
    ]


async def _register(services, learner_id: str = "ada", courses=("py-101",)):
    await services.learners.register_learner(Learner(id=learner_id, enrolled_course_ids=list(courses)))


class ConflictingStore(InMemoryProgressStore):
    def __init__(self):
        super().__init__()
        self.conflicts = 0

    async def replace_roadmap(self, roadmap, expected_version):
        if self.conflicts:
            self.conflicts -= 1
            raise ConcurrencyConflictError("simulated concurrent writer")
        return await super().replace_roadmap(roadmap, expected_version)


@pytest.mark.asyncio
async def test_three_advisor_timeouts_fall_back_to_ordered_roadmap(build_services, scripted_advisor):
    advisor = scripted_advisor("hang")
    services = build_services(advisor)
    await _register(services)

    roadmap = await services.roadmaps.generate("ada")

    assert advisor.calls == 3
    assert roadmap.source == "fallback"
    assert roadmap.status == "active"
    assert [item.content_id for item in roadmap.items] == FALLBACK_ORDER
    assert [item.order_index for item in roadmap.items] == list(range(5))
    assert [item.estimated_time for item in roadmap.items] == [45, 15, 60, 20, 75]
    assert roadmap.total_estimated_time == 215
    assert all(item.prerequisites == [] for item in roadmap.items)
    assert all(item.personalization_note == FALLBACK_NOTE for item in roadmap.items)
    assert [item.is_unlocked for item in roadmap.items] == [True, True, False, False, False]


@pytest.mark.asyncio
async def test_fallback_orders_courses_by_declared_order(services):
    await _register(services, courses=("py-201", "py-101"))
    roadmap = await services.roadmaps.generate("ada")
    assert [item.content_id for item in roadmap.items] == FALLBACK_ORDER + ["py-201-l1"]
    assert roadmap.source == "fallback"


@pytest.mark.asyncio
async def test_valid_advisor_path_is_used(build_services, scripted_advisor):
    advisor = scripted_advisor({
        "learning_path": [
            {"content_id": "py-101-l1", "estimated_time": 30, "personalization_note": "Visual examples first"},
            {"content_id": "py-101-a1"},
            {"content_id": "py-101-l2"},
        ],
        "reasoning": "Short sessions suit this learner",
    })
    services = build_services(advisor)
    await _register(services)
    await services.assessments.submit_attempt("ada", "py-101-a1", _a1(passing=False))

    roadmap = await services.roadmaps.generate("ada")

    assert roadmap.source == "advisor"
    assert roadmap.reasoning == "Short sessions suit this learner"
    assert [item.content_id for item in roadmap.items] == ["py-101-l1", "py-101-a1", "py-101-l2"]
    assert [item.estimated_time for item in roadmap.items] == [30, 15, 60]
    assert roadmap.items[2].prerequisites == ["py-101-l1"]
    assert roadmap.items[0].completion_status == "in_progress"
    request = advisor.requests[0]
    assert request.knowledge_gaps == ["builtins", "variables"]
    assert request.enrolled_content == ["py-101"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path",
    [
        [{"content_id": "py-101-l2"}, {"content_id": "py-101-l1"}],
        [{"content_id": "py-101-l1"}, {"content_id": "no-such-lesson"}],
        [{"content_id": "py-101-l1"}, {"content_id": "py-101-l1"}],
        [],
    ],
)
async def test_invalid_advisor_path_is_treated_as_failure(build_services, scripted_advisor, path):
    advisor = scripted_advisor({"learning_path": path, "reasoning": "?"})
    services = build_services(advisor)
    await _register(services)
    roadmap = await services.roadmaps.generate("ada")
    assert advisor.calls == 1
    assert roadmap.source == "fallback"
    assert [item.content_id for item in roadmap.items] == FALLBACK_ORDER


@pytest.mark.asyncio
async def test_generate_reuses_active_roadmap_unless_forced(build_services, scripted_advisor, unavailable_error):
    advisor = scripted_advisor(unavailable_error)
    services = build_services(advisor)
    await _register(services)

    first = await services.roadmaps.generate("ada")
    calls = advisor.calls
    again = await services.roadmaps.generate("ada")
    assert again.version == first.version
    assert advisor.calls == calls

    forced = await services.roadmaps.generate("ada", force=True)
    assert forced.version > first.version
    assert advisor.calls > calls


@pytest.mark.asyncio
async def test_failed_assessment_inserts_remedial_item_and_holds_failed_item(services):
    await _register(services)
    await services.roadmaps.generate("ada")

    await services.workflow.submit_attempt("ada", "py-101-a1", _a1(passing=False))
    roadmap = await services.roadmaps.get_active("ada")
    ids = [item.content_id for item in roadmap.items]
    assert ids == ["py-101-l1", "py-101-l1", "py-101-a1", "py-101-l2", "py-101-a2", "py-101-l3"]
    remedial, failed = roadmap.items[1], roadmap.items[2]
    assert remedial.is_remedial is True
    assert remedial.is_unlocked is True
    assert failed.completion_status == "failed"
    assert failed.held_by == ["py-101-l1"]
    assert failed.is_unlocked is False

    await services.workflow.update_progress("ada", "py-101-l1", ProgressUpdate(status="completed"))
    roadmap = await services.roadmaps.get_active("ada")
    failed = roadmap.items[2]
    assert roadmap.items[1].completion_status == "completed"
    assert failed.held_by == []
    assert failed.is_unlocked is True
    assert roadmap.items[3].is_unlocked is False

    result = await services.workflow.submit_attempt("ada", "py-101-a1", _a1(passing=True))
    assert set(result.newly_unlocked) == {"py-101-l2", "py-101-a2"}
    roadmap = await services.roadmaps.get_active("ada")
    by_id = {item.content_id: item for item in roadmap.items if not item.is_remedial}
    assert by_id["py-101-a1"].completion_status == "completed"
    assert by_id["py-101-l2"].is_unlocked is True
    assert by_id["py-101-a2"].is_unlocked is True
    assert by_id["py-101-l3"].is_unlocked is False


@pytest.mark.asyncio
async def test_roadmap_completes_when_every_item_is_done():
    catalog = ContentCatalog([
        {"kind": "course", "id": "c", "title": "Tiny"},
        {"kind": "lesson", "id": "only", "course_id": "c", "estimated_duration": 10},
    ])
    services = build_container(Settings(), catalog=catalog)
    await _register(services, courses=("c",))
    await services.roadmaps.generate("ada")
    await services.workflow.update_progress("ada", "only", ProgressUpdate(status="completed"))
    roadmap = await services.roadmaps.get_active("ada")
    assert roadmap.status == "completed"
    assert roadmap.items[0].completion_status == "completed"


@pytest.mark.asyncio
async def test_status_transitions(services):
    await _register(services)
    with pytest.raises(NotFoundError):
        await services.roadmaps.set_status("ada", "paused")
    await services.roadmaps.generate("ada")

    assert (await services.roadmaps.set_status("ada", "paused")).status == "paused"
    assert (await services.roadmaps.set_status("ada", "active")).status == "active"
    assert (await services.roadmaps.set_status("ada", "completed")).status == "completed"
    with pytest.raises(ValidationError):
        await services.roadmaps.set_status("ada", "active")


@pytest.mark.asyncio
async def test_conflict_is_retried_once_then_surfaced():
    store = ConflictingStore()
    services = build_container(Settings(), store=store)
    await _register(services)
    await services.roadmaps.generate("ada")

    store.conflicts = 1
    paused = await services.roadmaps.set_status("ada", "paused")
    assert paused.status == "paused"

    store.conflicts = 2
    with pytest.raises(ConcurrencyConflictError):
        await services.roadmaps.set_status("ada", "active")
    assert (await services.roadmaps.get_active("ada")).status == "paused"


@pytest.mark.asyncio
async def test_adapt_without_roadmap_is_a_no_op(services):
    await _register(services)
    assert await services.roadmaps.adapt("ada", "content_completed", "py-101-l1") is None
    result = await services.workflow.submit_attempt("ada", "py-101-a1", _a1(passing=False))
    assert result.attempt.passed is False


@pytest.mark.asyncio
async def test_roadmap_updates_are_published(services):
    await _register(services)
    roadmap = await services.roadmaps.generate("ada")
    events = services.events.history(EVENT_ROADMAP_UPDATED)
    assert events[-1]["data"] == {"learner_id": "ada", "status": "active", "version": roadmap.version, "source": "fallback"}


@pytest.mark.asyncio
async def test_expired_session_finalized_on_start_unlocks_and_adapts(services):
    t0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    await _register(services)
    await services.roadmaps.generate("ada")
    for _ in range(2):
        await services.workflow.submit_attempt("ada", "py-101-a1", _a1(passing=False))

    opened = await services.workflow.start_attempt("ada", "py-101-a1", now=t0)
    assert opened.session.attempt_number == 3
    await services.assessments.save_answers("ada", "py-101-a1", _a1(passing=True), now=t0 + timedelta(minutes=5))

    start = await services.workflow.start_attempt("ada", "py-101-a1", now=t0 + timedelta(minutes=16))

    assert start.session is None
    assert start.finalized.attempt.attempt_number == 3
    assert start.finalized.attempt.passed is True
    assert start.finalized.attempt.time_expired is True
    assert "py-101-l2" in start.finalized.newly_unlocked
    assert start.existing.redirected_to_existing is True
    assert start.existing.attempt.attempt_number == 3
    unlocked = [e["data"]["content_id"] for e in services.events.history(EVENT_CONTENT_UNLOCKED)]
    assert "py-101-l2" in unlocked

    assert (await services.gate.can_access("ada", "py-101-l2")).allowed is True
    roadmap = await services.roadmaps.get_active("ada")
    by_id = {item.content_id: item for item in roadmap.items if not item.is_remedial}
    assert by_id["py-101-a1"].completion_status == "completed"
    assert by_id["py-101-a1"].held_by == []
    assert by_id["py-101-l2"].is_unlocked is True


@pytest.mark.asyncio
async def test_downgraded_progress_relocks_dependents_on_roadmap(services):
    await _register(services)
    await services.roadmaps.generate("ada")
    await services.workflow.submit_attempt("ada", "py-101-a1", _a1(passing=True))
    roadmap = await services.roadmaps.get_active("ada")
    assert {i.content_id: i.is_unlocked for i in roadmap.items}["py-101-l2"] is True

    change = await services.workflow.update_progress("ada", "py-101-l1", ProgressUpdate(status="in_progress"))

    assert change.record.status == "in_progress"
    assert change.newly_unlocked == []
    assert change.roadmap_error is None
    assert (await services.gate.can_access("ada", "py-101-l2")).allowed is False
    by_id = {item.content_id: item for item in (await services.roadmaps.get_active("ada")).items}
    assert by_id["py-101-l1"].completion_status == "in_progress"
    assert by_id["py-101-l2"].is_unlocked is False
    assert by_id["py-101-a2"].is_unlocked is False


@pytest.mark.asyncio
async def test_second_conflict_during_upkeep_is_reported_on_the_result():
    store = ConflictingStore()
    services = build_container(Settings(), store=store)
    await _register(services)
    await services.roadmaps.generate("ada")

    store.conflicts = 2
    result = await services.workflow.submit_attempt("ada", "py-101-a1", _a1(passing=False))

    assert result.roadmap_error == "concurrency_conflict"
    assert len(await store.list_attempts("ada", "py-101-a1")) == 1
    roadmap = await services.roadmaps.get_active("ada")
    assert all(not item.is_remedial for item in roadmap.items)
