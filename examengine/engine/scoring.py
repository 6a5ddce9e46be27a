"""
Scoring engine.

Walks every question of the exam (not only the answered ones) so that the
unattempted count falls out of the same pass. Mark arithmetic is done in
Decimal so that fractional negative marks add up exactly.
"""

from __future__ import annotations

import math
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Mapping

from examengine.models import AnswerEntry, Attempt, Exam, ExamQuestion, ScoreResult, TopicPerformance, as_utc


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


def elapsed_seconds(started_at: datetime, submitted_at: datetime) -> int:
    seconds = (as_utc(submitted_at) - as_utc(started_at)).total_seconds()
    return max(0, math.floor(seconds))


def compute_percentage(score: float, total_marks: float) -> float:
    # Negative percentages are valid when negative marking drives the score below zero.
    if not total_marks:
        return 0.0
    return float(_dec(score) * 100 / _dec(total_marks))


def score_answers(
    questions: list[ExamQuestion],
    answers: Mapping[str, AnswerEntry],
    *,
    total_marks: float,
    started_at: datetime,
    submitted_at: datetime,
) -> ScoreResult:
    score = Decimal(0)
    correct = wrong = unattempted = 0
    topics: "OrderedDict[str, TopicPerformance]" = OrderedDict()

    for question in questions:
        stats = topics.setdefault(question.topic, TopicPerformance(topic=question.topic))
        stats.total += 1

        entry = answers.get(question.question_id)
        selected = entry.selected_option if entry is not None else None

        if selected is None:
            unattempted += 1
        elif selected == question.correct_option:
            correct += 1
            stats.correct += 1
            score += _dec(question.marks)
        else:
            wrong += 1
            stats.wrong += 1
            score -= _dec(question.negative_marks)

    for stats in topics.values():
        stats.accuracy = (stats.correct / stats.total) * 100 if stats.total else 0.0

    final_score = float(score)
    return ScoreResult(
        score=final_score,
        percentage=compute_percentage(final_score, total_marks),
        correct_answers=correct,
        wrong_answers=wrong,
        unattempted=unattempted,
        time_spent_sec=elapsed_seconds(started_at, submitted_at),
        topic_performance=list(topics.values()),
    )


def score_attempt(exam: Exam, attempt: Attempt) -> ScoreResult:
    if attempt.submitted_at is None:
        raise ValueError(f"attempt {attempt.attempt_id} has not been submitted")
    return score_answers(
        exam.questions,
        attempt.answers,
        total_marks=exam.total_marks,
        started_at=attempt.started_at,
        submitted_at=attempt.submitted_at,
    )
