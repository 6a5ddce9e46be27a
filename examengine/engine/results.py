from __future__ import annotations

from typing import Union

from examengine.engine.lifecycle import load_owned_attempt, ordered_questions
from examengine.errors import NotSubmittedYetError
from examengine.models import (
    AttemptResult,
    QuestionResult,
    ResultOption,
    ResultProcessing,
)
from examengine.storage.repo import AttemptRepository


async def fetch_result(
    repo: AttemptRepository, attempt_id: str, user_id: str
) -> Union[AttemptResult, ResultProcessing]:
    """Full post-submission breakdown. The only read that reveals the answer key."""
    attempt = await load_owned_attempt(repo, attempt_id, user_id)
    if not attempt.is_completed:
        raise NotSubmittedYetError(attempt_id)

    if not attempt.is_scored:
        # Scoring still queued, or it failed and the attempt awaits a replay.
        return ResultProcessing(attempt_id=attempt_id, status=attempt.status)

    exam = await repo.get_exam(attempt.exam_id)
    total_attempts = await repo.count_scored_attempts(attempt.exam_id)

    question_results = []
    for question in ordered_questions(exam, attempt.question_order):
        entry = attempt.answers.get(question.question_id)
        yours = entry.selected_option if entry else None
        correct = question.correct_option
        question_results.append(
            QuestionResult(
                question_id=question.question_id,
                statement=question.statement,
                image_url=question.image_url,
                topic=question.topic,
                options=[
                    ResultOption(key=o.key, text=o.text, image_url=o.image_url, is_correct=o.is_correct)
                    for o in question.options
                ],
                your_answer=yours,
                correct_answer=correct,
                is_correct=yours is not None and yours == correct,
                explanation=question.explanation,
                marked_for_review=entry.marked_for_review if entry else False,
                marks=question.marks,
                negative_marks=question.negative_marks,
            )
        )

    return AttemptResult(
        attempt_id=attempt.attempt_id,
        exam_id=exam.exam_id,
        exam_title=exam.title,
        score=attempt.score,
        total_marks=exam.total_marks,
        passing_marks=exam.passing_marks,
        percentage=round(attempt.percentage or 0, 2),
        percentile=round(attempt.percentile, 2) if attempt.percentile is not None else None,
        correct_answers=attempt.correct_answers or 0,
        wrong_answers=attempt.wrong_answers or 0,
        unattempted=attempt.unattempted or 0,
        time_spent=attempt.time_spent_sec or 0,
        submitted_at=attempt.submitted_at,
        rank=attempt.rank,
        total_attempts=total_attempts,
        topic_wise_performance=attempt.topic_performance or [],
        question_results=question_results,
        suspicious_flags=attempt.suspicious_flags,
        tab_switch_count=attempt.tab_switch_count,
    )
