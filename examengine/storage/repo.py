from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from examengine.models import (
    AnswerEntry,
    Attempt,
    Exam,
    LeaderboardEntry,
    ScoreResult,
    SuspiciousFlag,
    UserTotal,
)


class AttemptRepository(ABC):
    """Single authoritative store for attempts and leaderboard rows.

    Every mutating method is a single conditional update at the store level;
    callers never read-modify-write attempt fields themselves.
    """

    # ----- exams / purchases (external, read-mostly) -----

    @abstractmethod
    async def get_exam(self, exam_id: str) -> Exam:
        raise NotImplementedError

    @abstractmethod
    async def list_exam_ids_for_subject(self, subject_id: str) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    async def increment_exam_attempts(self, exam_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def has_valid_purchase(self, user_id: str, exam_id: str, now: datetime) -> bool:
        raise NotImplementedError

    # ----- attempts -----

    @abstractmethod
    async def create_attempt(self, attempt: Attempt) -> Attempt:
        """Insert an in-progress attempt; raises ConflictError if one already exists for (user, exam)."""
        raise NotImplementedError

    @abstractmethod
    async def find_active_attempt(self, user_id: str, exam_id: str) -> Optional[Attempt]:
        raise NotImplementedError

    @abstractmethod
    async def get_attempt(self, attempt_id: str) -> Attempt:
        raise NotImplementedError

    @abstractmethod
    async def merge_answers(self, attempt_id: str, answers: dict[str, AnswerEntry], now: datetime) -> bool:
        """Set answers[qid] for each entry if the attempt is in progress and unexpired at `now`."""
        raise NotImplementedError

    @abstractmethod
    async def append_violation(
        self, attempt_id: str, flag: SuspiciousFlag, increment_tab_switch: bool, now: datetime
    ) -> Optional[Attempt]:
        """Append a flag to an active attempt; returns the updated attempt or None when inactive."""
        raise NotImplementedError

    @abstractmethod
    async def complete_attempt(self, attempt_id: str, submitted_at: datetime) -> bool:
        """Flip in_progress -> completed. Only the first caller gets True."""
        raise NotImplementedError

    @abstractmethod
    async def save_result(self, attempt_id: str, result: ScoreResult, scored_at: datetime) -> bool:
        """Write score fields if the attempt is completed and not yet scored."""
        raise NotImplementedError

    @abstractmethod
    async def save_rank(self, attempt_id: str, rank: int, percentile: float, ranked_at: datetime) -> None:
        """Final step of ranking; only written after the leaderboard entry is in place."""
        raise NotImplementedError

    @abstractmethod
    async def count_scored_attempts(self, exam_id: str) -> int:
        raise NotImplementedError

    @abstractmethod
    async def count_outranking_attempts(
        self, exam_id: str, score: float, time_spent_sec: int, exclude_attempt_id: str
    ) -> int:
        """Count scored attempts with a higher score, or equal score and less time."""
        raise NotImplementedError

    @abstractmethod
    async def list_pending_attempt_ids(self, exam_id: Optional[str] = None) -> list[str]:
        """Completed attempts that are not scored, or scored but not yet ranked."""
        raise NotImplementedError

    # ----- leaderboard -----

    @abstractmethod
    async def get_leaderboard_entry(self, exam_id: str, user_id: str) -> Optional[LeaderboardEntry]:
        raise NotImplementedError

    @abstractmethod
    async def upsert_best_entry(self, entry: LeaderboardEntry) -> bool:
        """Insert, or replace only when entry.score strictly beats the stored score."""
        raise NotImplementedError

    @abstractmethod
    async def list_leaderboard_entries(self, exam_id: str) -> list[LeaderboardEntry]:
        raise NotImplementedError

    @abstractmethod
    async def set_leaderboard_ranks(self, exam_id: str, ranks: dict[str, int]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_leaderboard_exam_ids(self) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    async def aggregate_user_totals(self, exam_ids: Optional[list[str]] = None) -> list[UserTotal]:
        """Per-user sum of best scores (optionally restricted to some exams)."""
        raise NotImplementedError
