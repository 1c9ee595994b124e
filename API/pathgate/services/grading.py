"""Pure grading and feedback helpers for assessment attempts."""
from __future__ import annotations

import math
from dataclasses import dataclass

from pathgate.schemas.attempts import AttemptFeedback, GradedAnswer, SubmittedAnswer
from pathgate.schemas.content import (
    AssessmentNode,
    EssayQuestion,
    MultipleChoiceQuestion,
    ShortAnswerQuestion,
    TrueFalseQuestion,
)

MISSED_TYPE_RESOURCES = {
    "multiple_choice": "Review key concepts and definitions",
    "short_answer": "Practice applying concepts in your own words",
    "essay": "Practice explaining concepts in detail",
}


def _blank(response) -> bool:
    return response is None or (isinstance(response, str) and not response.strip())


def _as_bool(response) -> bool | None:
    if isinstance(response, bool):
        return response
    if isinstance(response, str) and response.strip().lower() in {"true", "false"}:
        return response.strip().lower() == "true"
    return None


def grade_answer(question, response) -> GradedAnswer:
    graded = GradedAnswer(
        question_id=question.id,
        response=response,
        status="incorrect",
        points_possible=question.points,
    )
    if _blank(response):
        graded.status = "unanswered"
        return graded

    if isinstance(question, EssayQuestion):
        graded.status = "pending_manual_grade"
        return graded

    if isinstance(question, MultipleChoiceQuestion):
        correct = response == question.correct_answer
    elif isinstance(question, TrueFalseQuestion):
        correct = _as_bool(response) is question.correct_answer
    elif isinstance(question, ShortAnswerQuestion):
        normalized = str(response).strip().lower()
        correct = normalized in {a.strip().lower() for a in question.acceptable_answers}
    else:
        correct = False

    if correct:
        graded.status = "correct"
        graded.points_earned = question.points
    return graded


def grade_answers(assessment: AssessmentNode, answers: list[SubmittedAnswer]) -> list[GradedAnswer]:
    """Grade in the assessment's question order; missing and unknown ids are ignored or unanswered."""
    responses = {a.question_id: a.response for a in answers}
    return [grade_answer(q, responses.get(q.id)) for q in assessment.questions]


def compute_score(points_earned: float, total_points: float) -> int:
    if total_points <= 0:
        return 0
    # Half-up rounding, not banker's rounding.
    return int(math.floor(points_earned / total_points * 100 + 0.5))


@dataclass
class ScoreSummary:
    points_earned: float
    total_points: float
    score: int
    passed: bool
    pending_manual_grade: bool


def summarize(assessment: AssessmentNode, graded: list[GradedAnswer]) -> ScoreSummary:
    points_earned = sum(a.points_earned for a in graded)
    total_points = assessment.total_points
    score = compute_score(points_earned, total_points)
    return ScoreSummary(
        points_earned=points_earned,
        total_points=total_points,
        score=score,
        passed=score >= assessment.minimum_passing_score,
        pending_manual_grade=any(a.status == "pending_manual_grade" for a in graded),
    )


def topic_breakdown(assessment: AssessmentNode, graded: list[GradedAnswer]) -> dict[str, dict[str, float]]:
    """Per-topic {correct, total, earned, possible}; answers awaiting manual grading are skipped."""
    by_id = {a.question_id: a for a in graded}
    topics: dict[str, dict[str, float]] = {}
    for question in assessment.questions:
        answer = by_id.get(question.id)
        if answer is None or answer.status == "pending_manual_grade":
            continue
        for topic in question.topics:
            stats = topics.setdefault(topic, {"correct": 0, "total": 0, "earned": 0.0, "possible": 0.0})
            stats["total"] += 1
            stats["possible"] += answer.points_possible
            stats["earned"] += answer.points_earned
            if answer.is_correct:
                stats["correct"] += 1
    return topics


def build_feedback(assessment: AssessmentNode, graded: list[GradedAnswer], score: int, passed: bool) -> AttemptFeedback:
    strengths: list[str] = []
    areas: list[str] = []
    resources: list[str] = []

    if passed:
        overall = f"Congratulations! You passed the assessment with a score of {score}%. "
        if score >= 90:
            overall += "Excellent work! You demonstrated strong mastery of the material."
            strengths.append("Excellent overall performance")
        elif score >= 80:
            overall += "Good work! You showed solid understanding of most concepts."
            strengths.append("Good overall understanding")
        else:
            overall += "You passed, but there's room for improvement in some areas."
        next_steps = "You can now proceed to the next lesson or course content."
    else:
        overall = (
            f"You scored {score}%, which is below the passing score of {assessment.minimum_passing_score}%. "
            "Don't worry, this is a learning opportunity!"
        )
        next_steps = "Review the feedback below and study the recommended materials before retaking the assessment."

    if any(a.status == "pending_manual_grade" for a in graded):
        overall += " Some answers are awaiting manual review and may raise your score."

    for topic, stats in topic_breakdown(assessment, graded).items():
        percentage = stats["correct"] / stats["total"] * 100
        if percentage >= 80:
            strengths.append(f"Strong understanding of {topic}")
        elif percentage < 60:
            areas.append(f"Need to review {topic} concepts")
            resources.append(f"Study materials on {topic}")

    missed_types = set()
    for answer in graded:
        if answer.status in {"incorrect", "unanswered"}:
            question = assessment.question(answer.question_id)
            if question is not None:
                missed_types.add(question.type)
    for question_type, resource in MISSED_TYPE_RESOURCES.items():
        if question_type in missed_types:
            resources.append(resource)

    return AttemptFeedback(
        overall_feedback=overall,
        strengths=strengths or ["Completed the assessment"],
        areas_for_improvement=areas,
        recommended_resources=resources,
        next_steps=next_steps,
    )
