"""
Answer ledger: merges single and batched answer saves into an attempt.

The answer map is sparse. A question id missing from the map means the
question was never touched; an entry with ``selected_option=None`` means the
student cleared their choice. Both score as unattempted.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from examengine.engine.lifecycle import load_owned_attempt
from examengine.errors import InactiveAttemptError, ValidationError
from examengine.models import (
    AnswerEntry,
    Attempt,
    SaveAnswerRequest,
    SaveAnswerResponse,
    SaveBatchResponse,
    utcnow,
)
from examengine.storage.repo import AttemptRepository

logger = logging.getLogger(__name__)

MAX_BATCH_ANSWERS = 200


def _ensure_active(attempt: Attempt, now: datetime) -> None:
    if attempt.is_completed:
        raise InactiveAttemptError("This attempt is no longer active")
    if attempt.is_expired(now):
        raise InactiveAttemptError("Time expired. Exam will be auto-submitted.")


async def _known_question_ids(repo: AttemptRepository, attempt: Attempt) -> set[str]:
    if attempt.question_order:
        return set(attempt.question_order)
    exam = await repo.get_exam(attempt.exam_id)
    return {q.question_id for q in exam.questions}


async def _merge(
    repo: AttemptRepository,
    attempt_id: str,
    user_id: str,
    entries: list[SaveAnswerRequest],
    now: datetime,
) -> int:
    attempt = await load_owned_attempt(repo, attempt_id, user_id)
    _ensure_active(attempt, now)

    known = await _known_question_ids(repo, attempt)
    unknown = sorted({e.question_id for e in entries if e.question_id not in known})
    if unknown:
        raise ValidationError(
            "Question does not belong to this exam",
            details=[{"field": "question_id", "message": f"unknown question {qid}"} for qid in unknown],
        )

    # Later entries for the same question win, like separate saves would.
    merged: dict[str, AnswerEntry] = {}
    for entry in entries:
        merged[entry.question_id] = AnswerEntry(
            selected_option=entry.selected_option,
            marked_for_review=entry.marked_for_review,
            answered_at=now,
        )

    if not await repo.merge_answers(attempt_id, merged, now):
        # Submitted or expired between the read above and the write.
        raise InactiveAttemptError()
    return len(entries)


async def save_answer(
    repo: AttemptRepository,
    attempt_id: str,
    user_id: str,
    entry: SaveAnswerRequest,
    *,
    now: Optional[datetime] = None,
) -> SaveAnswerResponse:
    await _merge(repo, attempt_id, user_id, [entry], now or utcnow())
    return SaveAnswerResponse()


async def save_answers_batch(
    repo: AttemptRepository,
    attempt_id: str,
    user_id: str,
    entries: list[SaveAnswerRequest],
    *,
    max_entries: int = MAX_BATCH_ANSWERS,
    now: Optional[datetime] = None,
) -> SaveBatchResponse:
    if not 1 <= len(entries) <= max_entries:
        raise ValidationError(
            "Validation failed",
            details=[{"field": "answers", "message": f"expected between 1 and {max_entries} answers"}],
        )
    saved = await _merge(repo, attempt_id, user_id, entries, now or utcnow())
    logger.debug(f"Batch saved {saved} answers for attempt {attempt_id}")
    return SaveBatchResponse(saved_count=saved)
