from __future__ import annotations

import pytest

from pathgate.content.catalog import ContentCatalog
from pathgate.core.errors import NotFoundError, ValidationError
from pathgate.core.event_bus import EVENT_CONTENT_UNLOCKED
from pathgate.core.settings import Settings
from pathgate.schemas.attempts import SubmittedAnswer
from pathgate.schemas.progress import Learner, ProgressUpdate
from pathgate.services.container import build_container

TEN_QUESTIONS = [
    {"type": "true_false", "id": f"q{i}", "correct_answer": True, "points": 10} for i in range(10)
]

COURSE_A = [
    {"kind": "course", "id": "course-a", "title": "Course A"},
    {"kind": "lesson", "id": "lesson-1", "course_id": "course-a", "order_index": 1,
     "title": "Lesson 1", "mandatory_assessment_id": "quiz-1"},
    {"kind": "assessment", "id": "quiz-1", "owner_id": "lesson-1", "minimum_passing_score": 70,
     "questions": TEN_QUESTIONS},
    {"kind": "lesson", "id": "lesson-2", "course_id": "course-a", "order_index": 2,
     "title": "Lesson 2", "prerequisites": ["lesson-1"]},
    {"kind": "lesson", "id": "lesson-3", "course_id": "course-a", "order_index": 3,
     "title": "Lesson 3", "prerequisites": ["lesson-2"]},
]


def _answers(correct: int) -> list[SubmittedAnswer]:
    return [SubmittedAnswer(question_id=f"q{i}", response=i < correct) for i in range(10)]


@pytest.fixture
def course_a_services():
    return build_container(Settings(), catalog=ContentCatalog(COURSE_A))


async def _register(services, learner_id: str = "learner-1", courses=("course-a",)):
    await services.learners.register_learner(Learner(id=learner_id, enrolled_course_ids=list(courses)))


@pytest.mark.asyncio
async def test_mastery_gate_scenario(course_a_services):
    services = course_a_services
    await _register(services)

    first = await services.assessments.submit_attempt("learner-1", "quiz-1", _answers(5), time_spent=300)
    assert first.attempt.score == 50
    assert first.attempt.passed is False

    decision = await services.gate.can_access("learner-1", "lesson-2")
    assert decision.allowed is False
    assert decision.blocked_by == "lesson-1"
    assert decision.failing_prerequisites == ["lesson-1"]

    second = await services.assessments.submit_attempt("learner-1", "quiz-1", _answers(8), time_spent=200)
    assert second.attempt.score == 80
    assert second.attempt.passed is True
    assert second.newly_unlocked == ["lesson-2"]

    record = await services.store.get_progress("learner-1", "quiz-1")
    assert record.best_score == 80
    assert record.attempts_count == 2

    decision = await services.gate.can_access("learner-1", "lesson-2")
    assert decision.allowed is True
    assert decision.blocked_by is None


@pytest.mark.asyncio
async def test_completion_without_passing_mandatory_assessment_still_blocks(course_a_services):
    services = course_a_services
    await _register(services)
    _, unlocked = await services.gate.update_progress(
        "learner-1", "lesson-1", ProgressUpdate(status="completed")
    )
    assert unlocked == []

    decision = await services.gate.can_access("learner-1", "lesson-2")
    assert decision.allowed is False
    status = decision.prerequisites[0]
    assert status.completed is True
    assert status.assessment_passed is False
    assert status.required_score == 70


@pytest.mark.asyncio
async def test_cascade_is_one_hop_only(course_a_services):
    services = course_a_services
    await _register(services)
    await services.assessments.submit_attempt("learner-1", "quiz-1", _answers(10))

    _, unlocked = await services.gate.update_progress("learner-1", "lesson-2", ProgressUpdate(status="completed"))
    assert unlocked == ["lesson-3"]
    events = services.events.history(EVENT_CONTENT_UNLOCKED)
    assert [e["data"]["content_id"] for e in events] == ["lesson-2", "lesson-3"]


@pytest.mark.asyncio
async def test_update_progress_validates_ranges(course_a_services):
    services = course_a_services
    await _register(services)
    with pytest.raises(ValidationError):
        await services.gate.update_progress(
            "learner-1", "lesson-1", ProgressUpdate(status="in_progress", completion_percentage=-5)
        )
    with pytest.raises(ValidationError):
        await services.gate.update_progress(
            "learner-1", "lesson-1", ProgressUpdate(status="in_progress", completion_percentage=140)
        )
    with pytest.raises(ValidationError):
        await services.gate.update_progress("learner-1", "lesson-1", ProgressUpdate(status="in_progress", time_spent=-1))

    record, _ = await services.gate.update_progress(
        "learner-1", "lesson-1", ProgressUpdate(status="in_progress", completion_percentage=40, time_spent=120)
    )
    assert record.completion_percentage == 40
    assert record.time_spent == 120
    assert record.last_accessed is not None


@pytest.mark.asyncio
async def test_unknown_learner_and_content(course_a_services):
    services = course_a_services
    with pytest.raises(NotFoundError):
        await services.gate.can_access("ghost", "lesson-1")
    await _register(services)
    with pytest.raises(NotFoundError):
        await services.gate.can_access("learner-1", "lesson-99")


@pytest.mark.asyncio
async def test_course_overview(course_a_services):
    services = course_a_services
    await _register(services)
    await services.assessments.submit_attempt("learner-1", "quiz-1", _answers(9))

    overview = await services.gate.course_overview("learner-1", "course-a")
    assert overview.total_lessons == 3
    assert overview.completed_lessons == 1
    assert overview.overall_progress == 33
    first, second, third = overview.lessons
    assert first.status == "completed" and first.assessment_passed is True
    assert second.allowed is True
    assert third.allowed is False and third.blocked_by == "lesson-2"
    assert overview.is_completed is False


@pytest.mark.asyncio
async def test_finishing_every_lesson_completes_course_and_unlocks_next_course():
    catalog = ContentCatalog(COURSE_A + [
        {"kind": "course", "id": "course-b", "title": "Course B", "prerequisites": ["course-a"]},
        {"kind": "lesson", "id": "lesson-b1", "course_id": "course-b", "title": "Lesson B1"},
    ])
    services = build_container(Settings(), catalog=catalog)
    await _register(services, courses=("course-a", "course-b"))
    await services.assessments.submit_attempt("learner-1", "quiz-1", _answers(10))
    await services.gate.update_progress("learner-1", "lesson-2", ProgressUpdate(status="completed"))
    assert (await services.gate.can_access("learner-1", "course-b")).allowed is False

    _, unlocked = await services.gate.update_progress("learner-1", "lesson-3", ProgressUpdate(status="completed"))

    assert unlocked == ["course-b"]
    course = await services.store.get_progress("learner-1", "course-a")
    assert course.status == "completed"
    assert course.completion_percentage == 100
    assert (await services.gate.can_access("learner-1", "course-b")).allowed is True
    assert (await services.gate.course_overview("learner-1", "course-a")).is_completed is True


@pytest.mark.asyncio
async def test_course_stays_open_until_final_assessment_passes():
    catalog = ContentCatalog([
        {"kind": "course", "id": "course-c", "title": "Course C", "mandatory_assessment_id": "final-c"},
        {"kind": "lesson", "id": "lesson-c1", "course_id": "course-c", "title": "Lesson C1"},
        {"kind": "assessment", "id": "final-c", "owner_id": "course-c", "minimum_passing_score": 70,
         "questions": TEN_QUESTIONS},
    ])
    services = build_container(Settings(), catalog=catalog)
    await _register(services, courses=("course-c",))
    await services.gate.update_progress("learner-1", "lesson-c1", ProgressUpdate(status="completed"))
    assert await services.store.get_progress("learner-1", "course-c") is None

    await services.assessments.submit_attempt("learner-1", "final-c", _answers(9))
    assert (await services.store.get_progress("learner-1", "course-c")).status == "completed"
