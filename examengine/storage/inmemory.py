from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from examengine.errors import ConflictError, NotFoundError
from examengine.models import (
    AnswerEntry,
    Attempt,
    AttemptStatus,
    Exam,
    LeaderboardEntry,
    Purchase,
    ScoreResult,
    SuspiciousFlag,
    UserTotal,
    as_utc,
)
from examengine.storage.repo import AttemptRepository


class InMemoryAttemptRepository(AttemptRepository):
    """Process-local store. A single lock stands in for document-level atomicity."""

    def __init__(self) -> None:
        self.exams: Dict[str, Exam] = {}
        self.purchases: List[Purchase] = []
        self.attempts: Dict[str, Attempt] = {}
        self.leaderboard: Dict[str, Dict[str, LeaderboardEntry]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    # ----- seeding (content/payment services own these in production) -----

    def add_exam(self, exam: Exam) -> Exam:
        self.exams[exam.exam_id] = exam
        return exam

    def add_purchase(self, purchase: Purchase) -> Purchase:
        self.purchases.append(purchase)
        return purchase

    def put_attempt(self, attempt: Attempt) -> Attempt:
        self.attempts[attempt.attempt_id] = attempt
        return attempt

    # ----- exams / purchases -----

    async def get_exam(self, exam_id: str) -> Exam:
        exam = self.exams.get(exam_id)
        if exam is None:
            raise NotFoundError("Exam not found")
        return exam.model_copy(deep=True)

    async def list_exam_ids_for_subject(self, subject_id: str) -> list[str]:
        return [e.exam_id for e in self.exams.values() if e.subject_id == subject_id]

    async def increment_exam_attempts(self, exam_id: str) -> None:
        async with self._lock:
            exam = self.exams.get(exam_id)
            if exam is not None:
                exam.total_attempts += 1

    async def has_valid_purchase(self, user_id: str, exam_id: str, now: datetime) -> bool:
        return any(
            p.user_id == user_id and p.exam_id == exam_id and p.is_valid(now) for p in self.purchases
        )

    # ----- attempts -----

    def _active(self, user_id: str, exam_id: str) -> Optional[Attempt]:
        for attempt in self.attempts.values():
            if (
                attempt.user_id == user_id
                and attempt.exam_id == exam_id
                and attempt.status == AttemptStatus.in_progress
            ):
                return attempt
        return None

    async def create_attempt(self, attempt: Attempt) -> Attempt:
        async with self._lock:
            existing = self._active(attempt.user_id, attempt.exam_id)
            if existing is not None:
                raise ConflictError("You already have an active attempt", attempt_id=existing.attempt_id)
            self.attempts[attempt.attempt_id] = attempt.model_copy(deep=True)
        return attempt

    async def find_active_attempt(self, user_id: str, exam_id: str) -> Optional[Attempt]:
        existing = self._active(user_id, exam_id)
        return existing.model_copy(deep=True) if existing else None

    async def get_attempt(self, attempt_id: str) -> Attempt:
        attempt = self.attempts.get(attempt_id)
        if attempt is None:
            raise NotFoundError("Attempt not found")
        return attempt.model_copy(deep=True)

    def _writable(self, attempt_id: str, now: datetime) -> Optional[Attempt]:
        attempt = self.attempts.get(attempt_id)
        if attempt is None or attempt.status != AttemptStatus.in_progress or attempt.is_expired(now):
            return None
        return attempt

    async def merge_answers(self, attempt_id: str, answers: dict[str, AnswerEntry], now: datetime) -> bool:
        async with self._lock:
            attempt = self._writable(attempt_id, now)
            if attempt is None:
                return False
            for question_id, entry in answers.items():
                attempt.answers[question_id] = entry.model_copy()
            attempt.updated_at = now
            return True

    async def append_violation(
        self, attempt_id: str, flag: SuspiciousFlag, increment_tab_switch: bool, now: datetime
    ) -> Optional[Attempt]:
        async with self._lock:
            attempt = self._writable(attempt_id, now)
            if attempt is None:
                return None
            attempt.suspicious_flags.append(flag.model_copy())
            if increment_tab_switch:
                attempt.tab_switch_count += 1
            attempt.updated_at = now
            return attempt.model_copy(deep=True)

    async def complete_attempt(self, attempt_id: str, submitted_at: datetime) -> bool:
        async with self._lock:
            attempt = self.attempts.get(attempt_id)
            if attempt is None or attempt.status != AttemptStatus.in_progress:
                return False
            attempt.status = AttemptStatus.completed
            attempt.submitted_at = submitted_at
            attempt.updated_at = submitted_at
            return True

    async def save_result(self, attempt_id: str, result: ScoreResult, scored_at: datetime) -> bool:
        async with self._lock:
            attempt = self.attempts.get(attempt_id)
            if attempt is None or attempt.status != AttemptStatus.completed or attempt.score is not None:
                return False
            for field, value in result.model_dump().items():
                setattr(attempt, field, value)
            attempt.topic_performance = [t.model_copy() for t in result.topic_performance]
            attempt.scored_at = scored_at
            attempt.updated_at = scored_at
            return True

    async def save_rank(self, attempt_id: str, rank: int, percentile: float, ranked_at: datetime) -> None:
        async with self._lock:
            attempt = self.attempts.get(attempt_id)
            if attempt is None:
                raise NotFoundError("Attempt not found")
            attempt.rank = rank
            attempt.percentile = percentile
            attempt.ranked_at = ranked_at

    def _scored(self, exam_id: str) -> list[Attempt]:
        return [
            a
            for a in self.attempts.values()
            if a.exam_id == exam_id and a.status == AttemptStatus.completed and a.score is not None
        ]

    async def count_scored_attempts(self, exam_id: str) -> int:
        return len(self._scored(exam_id))

    async def count_outranking_attempts(
        self, exam_id: str, score: float, time_spent_sec: int, exclude_attempt_id: str
    ) -> int:
        count = 0
        for other in self._scored(exam_id):
            if other.attempt_id == exclude_attempt_id:
                continue
            if other.score > score or (other.score == score and (other.time_spent_sec or 0) < time_spent_sec):
                count += 1
        return count

    async def list_pending_attempt_ids(self, exam_id: Optional[str] = None) -> list[str]:
        pending = [
            a
            for a in self.attempts.values()
            if a.status == AttemptStatus.completed
            and (a.score is None or a.ranked_at is None)
            and (exam_id is None or a.exam_id == exam_id)
        ]
        pending.sort(key=lambda a: as_utc(a.submitted_at or a.started_at))
        return [a.attempt_id for a in pending]

    # ----- leaderboard -----

    async def get_leaderboard_entry(self, exam_id: str, user_id: str) -> Optional[LeaderboardEntry]:
        entry = self.leaderboard[exam_id].get(user_id)
        return entry.model_copy() if entry else None

    async def upsert_best_entry(self, entry: LeaderboardEntry) -> bool:
        async with self._lock:
            existing = self.leaderboard[entry.exam_id].get(entry.user_id)
            if existing is not None and entry.score <= existing.score:
                return False
            stored = entry.model_copy()
            if existing is not None:
                stored.rank = existing.rank
            self.leaderboard[entry.exam_id][entry.user_id] = stored
            return True

    async def list_leaderboard_entries(self, exam_id: str) -> list[LeaderboardEntry]:
        return [e.model_copy() for e in self.leaderboard[exam_id].values()]

    async def set_leaderboard_ranks(self, exam_id: str, ranks: dict[str, int]) -> None:
        async with self._lock:
            for user_id, rank in ranks.items():
                entry = self.leaderboard[exam_id].get(user_id)
                if entry is not None:
                    entry.rank = rank

    async def list_leaderboard_exam_ids(self) -> list[str]:
        return [exam_id for exam_id, rows in self.leaderboard.items() if rows]

    async def aggregate_user_totals(self, exam_ids: Optional[list[str]] = None) -> list[UserTotal]:
        sums: Dict[str, List[LeaderboardEntry]] = defaultdict(list)
        for exam_id, rows in self.leaderboard.items():
            if exam_ids is not None and exam_id not in exam_ids:
                continue
            for entry in rows.values():
                sums[entry.user_id].append(entry)
        return [
            UserTotal(
                user_id=user_id,
                total_score=sum(e.score for e in entries),
                avg_percentage=sum(e.percentage for e in entries) / len(entries),
                exams_attempted=len(entries),
            )
            for user_id, entries in sums.items()
        ]
