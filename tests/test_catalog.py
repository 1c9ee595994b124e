from __future__ import annotations

import json

import pytest

from pathgate.content.catalog import ContentCatalog
from pathgate.core.errors import NotFoundError, ValidationError


def _lesson(lesson_id: str, *prereqs: str, **extra) -> dict:
    return {"kind": "lesson", "id": lesson_id, "course_id": "c1", "prerequisites": list(prereqs), **extra}


COURSE = {"kind": "course", "id": "c1", "title": "Course"}


def test_sample_catalog_indexes_dependents(catalog):
    assert catalog.list_prerequisites("py-101-l2") == ["py-101-l1"]
    assert set(catalog.list_dependents("py-101-l1")) == {"py-101-l2", "py-101-a2"}
    assert [lesson.id for lesson in catalog.lessons_for_course("py-101")] == ["py-101-l1", "py-101-l2", "py-101-l3"]
    assert catalog.owner_of("py-101-a1") == "py-101-l1"


def test_cycle_is_rejected_at_load_time():
    with pytest.raises(ValidationError) as exc_info:
        ContentCatalog([COURSE, _lesson("a", "c"), _lesson("b", "a"), _lesson("c", "b"), _lesson("d")])
    assert exc_info.value.details == {"nodes": ["a", "b", "c"]}


def test_dangling_references_are_rejected():
    with pytest.raises(ValidationError):
        ContentCatalog([COURSE, _lesson("a", "missing")])
    with pytest.raises(ValidationError):
        ContentCatalog([COURSE, _lesson("a", mandatory_assessment_id="nope")])
    with pytest.raises(ValidationError):
        ContentCatalog([COURSE, COURSE])


def test_question_variants_are_validated():
    bad_choice = {
        "kind": "assessment", "id": "x", "questions": [
            {"type": "multiple_choice", "id": "q1", "options": ["a", "b"], "correct_answer": "c", "points": 1},
        ],
    }
    with pytest.raises(ValidationError):
        ContentCatalog([bad_choice])


def test_unknown_content_raises_not_found(catalog):
    with pytest.raises(NotFoundError):
        catalog.get_content("nope")
    with pytest.raises(NotFoundError):
        catalog.get_assessment("py-101-l1")


def test_catalog_loads_from_json_file(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps({"nodes": [COURSE, _lesson("a"), _lesson("b", "a")]}), encoding="utf-8")
    loaded = ContentCatalog.from_file(path)
    assert len(loaded) == 3
    assert loaded.list_dependents("a") == ["b"]
