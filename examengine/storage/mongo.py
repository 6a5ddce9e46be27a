from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument, UpdateOne
from pymongo.errors import DuplicateKeyError

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
)
from examengine.storage.repo import AttemptRepository

logger = logging.getLogger(__name__)


class MongoAttemptRepository(AttemptRepository):
    def __init__(self, mongo_uri: str, db_name: str) -> None:
        self.client = AsyncIOMotorClient(mongo_uri, tz_aware=True)
        self.db = self.client[db_name]
        self.exams = self.db["exams"]
        self.purchases = self.db["purchases"]
        self.attempts = self.db["attempts"]
        self.leaderboard = self.db["leaderboard_entries"]

    async def ensure_indexes(self) -> None:
        await self.attempts.create_index("attempt_id", unique=True)
        await self.attempts.create_index([("exam_id", ASCENDING), ("status", ASCENDING), ("score", ASCENDING)])
        # One in-progress attempt per (user, exam), enforced by the store.
        await self.attempts.create_index(
            [("user_id", ASCENDING), ("exam_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"status": AttemptStatus.in_progress.value},
            name="one_active_attempt",
        )
        await self.leaderboard.create_index([("exam_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
        await self.leaderboard.create_index("user_id")
        await self.exams.create_index("exam_id", unique=True)
        await self.purchases.create_index([("user_id", ASCENDING), ("exam_id", ASCENDING)])
        logger.info("Mongo indexes ensured")

    def close(self) -> None:
        self.client.close()

    # ----- exams / purchases -----

    async def get_exam(self, exam_id: str) -> Exam:
        doc = await self.exams.find_one({"exam_id": exam_id})
        if not doc:
            raise NotFoundError("Exam not found")
        return Exam.model_validate(doc)

    async def list_exam_ids_for_subject(self, subject_id: str) -> list[str]:
        cursor = self.exams.find({"subject_id": subject_id}, {"exam_id": 1})
        docs = await cursor.to_list(length=10_000)
        return [d["exam_id"] for d in docs]

    async def increment_exam_attempts(self, exam_id: str) -> None:
        await self.exams.update_one({"exam_id": exam_id}, {"$inc": {"total_attempts": 1}})

    async def has_valid_purchase(self, user_id: str, exam_id: str, now: datetime) -> bool:
        cursor = self.purchases.find({"user_id": user_id, "exam_id": exam_id, "status": "active"})
        docs = await cursor.to_list(length=100)
        return any(Purchase.model_validate(d).is_valid(now) for d in docs)

    # ----- attempts -----

    async def create_attempt(self, attempt: Attempt) -> Attempt:
        try:
            await self.attempts.insert_one(attempt.model_dump())
        except DuplicateKeyError:
            existing = await self.find_active_attempt(attempt.user_id, attempt.exam_id)
            if existing is None:
                raise
            raise ConflictError("You already have an active attempt", attempt_id=existing.attempt_id)
        return attempt

    async def find_active_attempt(self, user_id: str, exam_id: str) -> Optional[Attempt]:
        doc = await self.attempts.find_one(
            {"user_id": user_id, "exam_id": exam_id, "status": AttemptStatus.in_progress.value}
        )
        return Attempt.model_validate(doc) if doc else None

    async def get_attempt(self, attempt_id: str) -> Attempt:
        doc = await self.attempts.find_one({"attempt_id": attempt_id})
        if not doc:
            raise NotFoundError("Attempt not found")
        return Attempt.model_validate(doc)

    def _writable_filter(self, attempt_id: str, now: datetime) -> dict[str, Any]:
        return {
            "attempt_id": attempt_id,
            "status": AttemptStatus.in_progress.value,
            "expires_at": {"$gte": now},
        }

    async def merge_answers(self, attempt_id: str, answers: dict[str, AnswerEntry], now: datetime) -> bool:
        set_doc: dict[str, Any] = {f"answers.{qid}": entry.model_dump() for qid, entry in answers.items()}
        set_doc["updated_at"] = now
        result = await self.attempts.update_one(self._writable_filter(attempt_id, now), {"$set": set_doc})
        return result.matched_count == 1

    async def append_violation(
        self, attempt_id: str, flag: SuspiciousFlag, increment_tab_switch: bool, now: datetime
    ) -> Optional[Attempt]:
        update: dict[str, Any] = {
            "$push": {"suspicious_flags": flag.model_dump()},
            "$set": {"updated_at": now},
        }
        if increment_tab_switch:
            update["$inc"] = {"tab_switch_count": 1}
        doc = await self.attempts.find_one_and_update(
            self._writable_filter(attempt_id, now),
            update,
            return_document=ReturnDocument.AFTER,
        )
        return Attempt.model_validate(doc) if doc else None

    async def complete_attempt(self, attempt_id: str, submitted_at: datetime) -> bool:
        result = await self.attempts.update_one(
            {"attempt_id": attempt_id, "status": AttemptStatus.in_progress.value},
            {
                "$set": {
                    "status": AttemptStatus.completed.value,
                    "submitted_at": submitted_at,
                    "updated_at": submitted_at,
                }
            },
        )
        return result.modified_count == 1

    async def save_result(self, attempt_id: str, result: ScoreResult, scored_at: datetime) -> bool:
        set_doc = result.model_dump()
        set_doc["scored_at"] = scored_at
        set_doc["updated_at"] = scored_at
        res = await self.attempts.update_one(
            {"attempt_id": attempt_id, "status": AttemptStatus.completed.value, "score": None},
            {"$set": set_doc},
        )
        return res.modified_count == 1

    async def save_rank(self, attempt_id: str, rank: int, percentile: float, ranked_at: datetime) -> None:
        res = await self.attempts.update_one(
            {"attempt_id": attempt_id},
            {"$set": {"rank": rank, "percentile": percentile, "ranked_at": ranked_at}},
        )
        if res.matched_count == 0:
            raise NotFoundError("Attempt not found")

    def _scored_filter(self, exam_id: str) -> dict[str, Any]:
        return {"exam_id": exam_id, "status": AttemptStatus.completed.value, "score": {"$ne": None}}

    async def count_scored_attempts(self, exam_id: str) -> int:
        return await self.attempts.count_documents(self._scored_filter(exam_id))

    async def count_outranking_attempts(
        self, exam_id: str, score: float, time_spent_sec: int, exclude_attempt_id: str
    ) -> int:
        query = self._scored_filter(exam_id)
        query["attempt_id"] = {"$ne": exclude_attempt_id}
        query["$or"] = [
            {"score": {"$gt": score}},
            {"score": score, "time_spent_sec": {"$lt": time_spent_sec}},
        ]
        return await self.attempts.count_documents(query)

    async def list_pending_attempt_ids(self, exam_id: Optional[str] = None) -> list[str]:
        query: dict[str, Any] = {
            "status": AttemptStatus.completed.value,
            "$or": [{"score": None}, {"ranked_at": None}],
        }
        if exam_id:
            query["exam_id"] = exam_id
        cursor = self.attempts.find(query, {"attempt_id": 1}).sort("submitted_at", 1)
        docs = await cursor.to_list(length=10_000)
        return [d["attempt_id"] for d in docs]

    # ----- leaderboard -----

    async def get_leaderboard_entry(self, exam_id: str, user_id: str) -> Optional[LeaderboardEntry]:
        doc = await self.leaderboard.find_one({"exam_id": exam_id, "user_id": user_id})
        return LeaderboardEntry.model_validate(doc) if doc else None

    async def upsert_best_entry(self, entry: LeaderboardEntry) -> bool:
        replace = entry.model_dump(exclude={"rank", "exam_id", "user_id"})
        res = await self.leaderboard.update_one(
            {"exam_id": entry.exam_id, "user_id": entry.user_id, "score": {"$lt": entry.score}},
            {"$set": replace},
        )
        if res.matched_count == 1:
            return True
        try:
            await self.leaderboard.insert_one(entry.model_dump())
        except DuplicateKeyError:
            # Existing entry is at least as good; ties keep the earlier row.
            return False
        return True

    async def list_leaderboard_entries(self, exam_id: str) -> list[LeaderboardEntry]:
        cursor = self.leaderboard.find({"exam_id": exam_id})
        docs = await cursor.to_list(length=100_000)
        return [LeaderboardEntry.model_validate(d) for d in docs]

    async def set_leaderboard_ranks(self, exam_id: str, ranks: dict[str, int]) -> None:
        if not ranks:
            return
        ops = [
            UpdateOne({"exam_id": exam_id, "user_id": user_id}, {"$set": {"rank": rank}})
            for user_id, rank in ranks.items()
        ]
        await self.leaderboard.bulk_write(ops, ordered=False)

    async def list_leaderboard_exam_ids(self) -> list[str]:
        return list(await self.leaderboard.distinct("exam_id"))

    async def aggregate_user_totals(self, exam_ids: Optional[list[str]] = None) -> list[UserTotal]:
        pipeline: list[dict[str, Any]] = []
        if exam_ids is not None:
            pipeline.append({"$match": {"exam_id": {"$in": exam_ids}}})
        pipeline.append(
            {
                "$group": {
                    "_id": "$user_id",
                    "total_score": {"$sum": "$score"},
                    "avg_percentage": {"$avg": "$percentage"},
                    "exams_attempted": {"$sum": 1},
                }
            }
        )
        cursor = self.leaderboard.aggregate(pipeline)
        docs = await cursor.to_list(length=100_000)
        return [
            UserTotal(
                user_id=d["_id"],
                total_score=d.get("total_score") or 0,
                avg_percentage=d.get("avg_percentage") or 0,
                exams_attempted=d.get("exams_attempted") or 0,
            )
            for d in docs
        ]
