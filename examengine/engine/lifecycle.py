"""
Attempt state machine.

absent -> in_progress -> completed. "Expired" is not stored: an in-progress
attempt past its expires_at simply stops accepting reads and writes until it
is submitted.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Optional

from examengine.errors import (
    AlreadyCompletedError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
)
from examengine.models import (
    Attempt,
    AttemptSession,
    AttemptStatus,
    Exam,
    ExamQuestion,
    PublicOption,
    PublicQuestion,
    SubmitResponse,
    as_utc,
    utcnow,
)
from examengine.storage.repo import AttemptRepository
from examengine.workers.dispatch import ScoringDispatcher

logger = logging.getLogger(__name__)

_system_random = random.SystemRandom()


async def load_owned_attempt(repo: AttemptRepository, attempt_id: str, user_id: str) -> Attempt:
    """Fetch an attempt and verify the caller owns it."""
    attempt = await repo.get_attempt(attempt_id)
    if attempt.user_id != user_id:
        logger.warning(
            f"Ownership mismatch: user {user_id} tried to access attempt {attempt_id} owned by {attempt.user_id}"
        )
        raise ForbiddenError("Unauthorized access")
    return attempt


def public_question(question: ExamQuestion, sequence: int) -> PublicQuestion:
    # Never carries is_correct, the correct key or the explanation.
    return PublicQuestion(
        id=question.question_id,
        sequence=sequence,
        statement=question.statement,
        image_url=question.image_url,
        topic=question.topic,
        marks=question.marks,
        negative_marks=question.negative_marks,
        difficulty=question.difficulty,
        options=[PublicOption(key=o.key, text=o.text, image_url=o.image_url) for o in question.options],
    )


def ordered_questions(exam: Exam, question_order: list[str]) -> list[ExamQuestion]:
    """Questions in the attempt's snapshot order; falls back to exam order for legacy attempts."""
    if not question_order:
        return list(exam.questions)
    by_id = exam.question_map()
    return [by_id[qid] for qid in question_order if qid in by_id]


def snapshot_order(exam: Exam, rng: Optional[random.Random] = None) -> list[str]:
    order = [q.question_id for q in exam.questions]
    if exam.randomize_order:
        # random.shuffle is Fisher-Yates: every permutation equally likely.
        (rng or _system_random).shuffle(order)
    return order


def _session(exam: Exam, attempt: Attempt) -> AttemptSession:
    questions = ordered_questions(exam, attempt.question_order)
    return AttemptSession(
        attempt_id=attempt.attempt_id,
        exam_id=exam.exam_id,
        exam_title=exam.title,
        exam_slug=exam.slug,
        subject=exam.subject_name or "Multi-Subject",
        duration=exam.duration_minutes,
        total_questions=len(questions),
        total_marks=exam.total_marks,
        passing_marks=exam.passing_marks,
        instructions=exam.instructions,
        randomize_order=exam.randomize_order,
        allow_review=exam.allow_review,
        started_at=attempt.started_at,
        expires_at=attempt.expires_at,
        questions=[public_question(q, i + 1) for i, q in enumerate(questions)],
        saved_answers=attempt.answers,
    )


async def start_attempt(
    repo: AttemptRepository,
    user_id: str,
    exam_id: str,
    ip_address: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> AttemptSession:
    now = now or utcnow()
    exam = await repo.get_exam(exam_id)

    if not exam.is_published:
        raise ForbiddenError("This exam is not yet published")

    existing = await repo.find_active_attempt(user_id, exam_id)
    if existing is not None:
        raise ConflictError("You already have an active attempt", attempt_id=existing.attempt_id)

    if not exam.is_free and not await repo.has_valid_purchase(user_id, exam_id, now):
        raise ForbiddenError("You must purchase this exam to take it")

    attempt = Attempt(
        user_id=user_id,
        exam_id=exam_id,
        status=AttemptStatus.in_progress,
        started_at=now,
        expires_at=now + timedelta(minutes=exam.duration_minutes),
        updated_at=now,
        question_order=snapshot_order(exam, rng),
        ip_address=ip_address,
    )
    # The store rejects a second concurrent in-progress attempt with ConflictError.
    attempt = await repo.create_attempt(attempt)
    await repo.increment_exam_attempts(exam_id)

    logger.info(f"User {user_id} started exam {exam_id}: attempt {attempt.attempt_id}")
    return _session(exam, attempt)


async def fetch_attempt(
    repo: AttemptRepository, attempt_id: str, user_id: str, *, now: Optional[datetime] = None
) -> AttemptSession:
    now = now or utcnow()
    attempt = await load_owned_attempt(repo, attempt_id, user_id)

    if attempt.is_completed:
        raise AlreadyCompletedError(attempt.attempt_id)
    if attempt.is_expired(now):
        raise ExpiredError(attempt.attempt_id)

    exam = await repo.get_exam(attempt.exam_id)
    return _session(exam, attempt)


async def submit_attempt(
    repo: AttemptRepository,
    attempt_id: str,
    user_id: str,
    dispatcher: ScoringDispatcher,
    *,
    now: Optional[datetime] = None,
) -> SubmitResponse:
    """Flip the attempt to completed and hand scoring off; never waits for scoring."""
    now = now or utcnow()
    attempt = await load_owned_attempt(repo, attempt_id, user_id)
    if attempt.status != AttemptStatus.in_progress:
        raise AlreadyCompletedError(attempt_id, message="Attempt already submitted")

    # Guarded flip: of two racing submits only one sees True.
    if not await repo.complete_attempt(attempt_id, submitted_at=now):
        raise AlreadyCompletedError(attempt_id, message="Attempt already submitted")

    late = (now - as_utc(attempt.expires_at)).total_seconds()
    if late > 0:
        logger.info(f"Attempt {attempt_id} submitted {int(late)}s after expiry")
    logger.info(f"User {user_id} submitted attempt {attempt_id}")

    await dispatcher.dispatch(attempt_id)
    return SubmitResponse(attempt_id=attempt_id, processing=True, submitted_at=now)
