"""
Rank and leaderboard engine.

Both rank projections share one ordering: higher score first, then less time
spent. The attempt rank counts strictly better attempts; the leaderboard rank
is a dense rank over each user's best entry.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from examengine.models import (
    Attempt,
    GlobalRankResponse,
    LeaderboardEntry,
    LeaderboardResponse,
    LeaderboardRow,
    UserTotal,
    as_utc,
    utcnow,
)
from examengine.storage.repo import AttemptRepository

logger = logging.getLogger(__name__)

# One writer per exam for rank recomputation. A lock lives only while some
# task holds or waits on it, so none outlives the event loop that made it.
_exam_locks: dict[str, asyncio.Lock] = {}
_exam_lock_users: Counter[str] = Counter()


@asynccontextmanager
async def exam_lock(exam_id: str) -> AsyncIterator[None]:
    lock = _exam_locks.setdefault(exam_id, asyncio.Lock())
    _exam_lock_users[exam_id] += 1
    try:
        async with lock:
            yield
    finally:
        _exam_lock_users[exam_id] -= 1
        if _exam_lock_users[exam_id] <= 0:
            del _exam_lock_users[exam_id]
            _exam_locks.pop(exam_id, None)


def rank_key(score: float, time_spent_sec: int) -> tuple[float, int]:
    return (-score, time_spent_sec)


def compute_percentile(rank: int, total: int) -> float:
    if total <= 1:
        return 100.0
    return (total - rank) / (total - 1) * 100


def dense_ranks(entries: Iterable[LeaderboardEntry]) -> list[tuple[LeaderboardEntry, int]]:
    """Sort entries best-first and assign dense ranks; identical score and time share a rank."""
    ordered = sorted(entries, key=lambda e: (rank_key(e.score, e.time_taken), as_utc(e.submitted_at)))
    ranked: list[tuple[LeaderboardEntry, int]] = []
    rank = 0
    previous: Optional[tuple[float, int]] = None
    for entry in ordered:
        key = rank_key(entry.score, entry.time_taken)
        if key != previous:
            rank += 1
            previous = key
        ranked.append((entry, rank))
    return ranked


async def rank_attempt(repo: AttemptRepository, attempt: Attempt) -> tuple[int, float, int]:
    """Return (rank, percentile, total scored attempts) for a scored attempt."""
    if attempt.score is None or attempt.time_spent_sec is None:
        raise ValueError(f"attempt {attempt.attempt_id} is not scored")
    better = await repo.count_outranking_attempts(
        attempt.exam_id, attempt.score, attempt.time_spent_sec, exclude_attempt_id=attempt.attempt_id
    )
    total = await repo.count_scored_attempts(attempt.exam_id)
    rank = better + 1
    return rank, compute_percentile(rank, total), total


async def recalculate_leaderboard_ranks(repo: AttemptRepository, exam_id: str) -> list[LeaderboardEntry]:
    async with exam_lock(exam_id):
        entries = await repo.list_leaderboard_entries(exam_id)
        ranked = dense_ranks(entries)
        await repo.set_leaderboard_ranks(exam_id, {entry.user_id: rank for entry, rank in ranked})
        result = []
        for entry, rank in ranked:
            entry.rank = rank
            result.append(entry)
        return result


async def update_leaderboard(repo: AttemptRepository, attempt: Attempt, rerank: bool = False) -> bool:
    """Upsert the user's best entry; re-rank the exam when it changed or when asked to."""
    entry = LeaderboardEntry(
        exam_id=attempt.exam_id,
        user_id=attempt.user_id,
        attempt_id=attempt.attempt_id,
        score=attempt.score or 0,
        percentage=attempt.percentage or 0,
        time_taken=attempt.time_spent_sec or 0,
        submitted_at=attempt.submitted_at or attempt.updated_at,
    )
    changed = await repo.upsert_best_entry(entry)
    if changed or rerank:
        await recalculate_leaderboard_ranks(repo, attempt.exam_id)
    return changed


async def update_rankings(
    repo: AttemptRepository, attempt_id: str, *, resume: bool = False, now: Optional[datetime] = None
) -> Attempt:
    """Rank a scored attempt and fold it into the exam leaderboard.

    save_rank goes last: an attempt without ranked_at is picked up again by
    replay and backfill. A resumed run re-ranks the exam even if the upsert
    already landed on the earlier try.
    """
    attempt = await repo.get_attempt(attempt_id)
    rank, percentile, total = await rank_attempt(repo, attempt)
    changed = await update_leaderboard(repo, attempt, rerank=resume)
    ranked_at = now or utcnow()
    await repo.save_rank(attempt_id, rank, percentile, ranked_at)
    logger.info(
        f"Attempt {attempt_id} ranked #{rank} of {total} (percentile {percentile:.2f}); "
        f"leaderboard {'updated' if changed else 'unchanged'}"
    )
    attempt.rank = rank
    attempt.percentile = percentile
    attempt.ranked_at = ranked_at
    return attempt


# ===== Read side =====


def _row(entry: LeaderboardEntry, current_user_id: Optional[str]) -> LeaderboardRow:
    return LeaderboardRow(
        rank=entry.rank or 0,
        user_id=entry.user_id,
        score=entry.score,
        percentage=round(entry.percentage, 2),
        time_taken=entry.time_taken,
        submitted_at=entry.submitted_at,
        is_current_user=entry.user_id == current_user_id,
    )


async def exam_leaderboard(
    repo: AttemptRepository, exam_id: str, current_user_id: Optional[str], limit: int = 25
) -> LeaderboardResponse:
    exam = await repo.get_exam(exam_id)
    entries = await repo.list_leaderboard_entries(exam_id)
    entries.sort(key=lambda e: (e.rank is None, e.rank or 0, rank_key(e.score, e.time_taken)))

    top = entries[:limit]
    current = None
    if current_user_id and all(e.user_id != current_user_id for e in top):
        mine = next((e for e in entries if e.user_id == current_user_id), None)
        if mine is not None:
            current = _row(mine, current_user_id)

    return LeaderboardResponse(
        scope="exam",
        scope_id=exam_id,
        title=exam.title,
        entries=[_row(e, current_user_id) for e in top],
        current_user_entry=current,
        total_participants=len(entries),
    )


def order_user_totals(totals: list[UserTotal]) -> list[UserTotal]:
    return sorted(totals, key=lambda t: (-t.total_score, t.user_id))


def _total_row(position: int, total: UserTotal, current_user_id: Optional[str]) -> LeaderboardRow:
    return LeaderboardRow(
        rank=position,
        user_id=total.user_id,
        score=total.total_score,
        percentage=round(total.avg_percentage, 2),
        exams_attempted=total.exams_attempted,
        is_current_user=total.user_id == current_user_id,
    )


async def cumulative_leaderboard(
    repo: AttemptRepository,
    current_user_id: Optional[str],
    limit: int = 25,
    subject_id: Optional[str] = None,
) -> LeaderboardResponse:
    """Sum of best scores per user, across all exams or one subject's exams."""
    if subject_id is not None:
        exam_ids = await repo.list_exam_ids_for_subject(subject_id)
        totals = order_user_totals(await repo.aggregate_user_totals(exam_ids)) if exam_ids else []
        subject_name = (await repo.get_exam(exam_ids[0])).subject_name if exam_ids else None
        title = f"{subject_name or subject_id} Exams"
        scope = "subject"
    else:
        totals = order_user_totals(await repo.aggregate_user_totals())
        title = "All Exams"
        scope = "global"

    rows = [_total_row(i + 1, t, current_user_id) for i, t in enumerate(totals)]
    current = None
    if current_user_id:
        position = next((i for i, t in enumerate(totals) if t.user_id == current_user_id), None)
        if position is not None and position >= limit:
            current = rows[position]

    return LeaderboardResponse(
        scope=scope,
        scope_id=subject_id,
        title=title,
        entries=rows[:limit],
        current_user_entry=current,
        total_participants=len(totals),
    )


async def global_rank(repo: AttemptRepository, user_id: str) -> GlobalRankResponse:
    # Recomputed on every read; nothing is maintained incrementally.
    totals = order_user_totals(await repo.aggregate_user_totals())
    for position, total in enumerate(totals, start=1):
        if total.user_id == user_id:
            return GlobalRankResponse(
                user_id=user_id, rank=position, total_score=total.total_score, total_participants=len(totals)
            )
    return GlobalRankResponse(user_id=user_id, total_participants=len(totals))
