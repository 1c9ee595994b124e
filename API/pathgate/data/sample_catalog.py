"""Bundled demo catalog used when no catalog file is configured."""

from __future__ import annotations

SAMPLE_CATALOG = [
    {"kind": "course", "id": "py-101", "title": "Python Foundations", "order_index": 0, "estimated_duration": 600},
    {
        "kind": "lesson", "id": "py-101-l1", "course_id": "py-101", "order_index": 1,
        "title": "Values and Variables", "estimated_duration": 45,
        "mandatory_assessment_id": "py-101-a1", "topics": ["variables"],
    },
    {
        "kind": "assessment", "id": "py-101-a1", "owner_id": "py-101-l1", "title": "Variables check",
        "minimum_passing_score": 70, "max_attempts": 3, "time_limit": 15, "estimated_duration": 15,
        "questions": [
            {"type": "multiple_choice", "id": "q1", "prompt": "Which name is a valid identifier?",
             "options": ["2total", "total_2", "total-2"], "correct_answer": "total_2",
             "points": 2, "topics": ["variables"]},
            {"type": "true_false", "id": "q2", "prompt": "Python names are case sensitive.",
             "correct_answer": True, "points": 1, "topics": ["variables"]},
            {"type": "short_answer", "id": "q3", "prompt": "Built-in that returns an object's type?",
             "acceptable_answers": ["type", "type()"], "points": 2, "topics": ["builtins"]},
        ],
    },
    {
        "kind": "lesson", "id": "py-101-l2", "course_id": "py-101", "order_index": 2,
        "title": "Control Flow", "estimated_duration": 60, "prerequisites": ["py-101-l1"],
        "mandatory_assessment_id": "py-101-a2", "topics": ["control-flow"],
    },
    {
        "kind": "assessment", "id": "py-101-a2", "owner_id": "py-101-l2", "title": "Control flow check",
        "prerequisites": ["py-101-l1"], "minimum_passing_score": 70, "max_attempts": 2,
        "estimated_duration": 20,
        "questions": [
            {"type": "multiple_choice", "id": "q1", "prompt": "Which keyword exits a loop early?",
             "options": ["continue", "break", "pass"], "correct_answer": "break",
             "points": 2, "topics": ["loops"]},
            {"type": "essay", "id": "q2", "prompt": "Explain when you would prefer a while loop.",
             "points": 3, "topics": ["loops"]},
        ],
    },
    {
        "kind": "lesson", "id": "py-101-l3", "course_id": "py-101", "order_index": 3,
        "title": "Functions", "estimated_duration": 75, "prerequisites": ["py-101-l2"],
        "topics": ["functions"],
    },
    {"kind": "course", "id": "py-201", "title": "Working with Data", "order_index": 1,
     "estimated_duration": 480, "prerequisites": ["py-101"]},
    {
        "kind": "lesson", "id": "py-201-l1", "course_id": "py-201", "order_index": 1,
        "title": "Reading Files", "estimated_duration": 50, "prerequisites": ["py-101-l3"],
        "topics": ["io"],
    },
]
