import os
from datetime import datetime, timedelta, timezone

import pytest

# Keep tracing and the scoring queue out of unit tests.
os.environ.setdefault("OBSERVABILITY_ENABLED", "false")
os.environ.setdefault("SCORING_DISPATCH", "background")
os.environ.setdefault("STORAGE_BACKEND", "inmemory")

from examengine.models import (  # noqa: E402
    Attempt,
    AttemptStatus,
    Exam,
    ExamOption,
    ExamQuestion,
    LeaderboardEntry,
)
from examengine.storage.inmemory import InMemoryAttemptRepository  # noqa: E402
from examengine.workers.dispatch import ScoringDispatcher  # noqa: E402

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class RecordingDispatcher(ScoringDispatcher):
    def __init__(self):
        self.dispatched = []

    async def dispatch(self, attempt_id):
        self.dispatched.append(attempt_id)


def make_question(qid, correct="A", topic="Algebra", marks=2, negative_marks=0.5):
    return ExamQuestion(
        question_id=qid,
        statement=f"Statement for {qid}",
        topic=topic,
        marks=marks,
        negative_marks=negative_marks,
        explanation=f"Because {correct}",
        options=[ExamOption(key=k, text=f"{qid}-{k}", is_correct=(k == correct)) for k in ("A", "B", "C", "D")],
    )


def make_exam(exam_id="exam-1", **overrides):
    fields = dict(
        exam_id=exam_id,
        title="Mock Test 1",
        slug="mock-test-1",
        subject_id="math",
        subject_name="Mathematics",
        duration_minutes=60,
        total_marks=6,
        passing_marks=3,
        is_published=True,
        is_free=True,
        questions=[
            make_question("q1", topic="Algebra"),
            make_question("q2", topic="Algebra"),
            make_question("q3", topic="Geometry"),
        ],
    )
    fields.update(overrides)
    return Exam(**fields)


def scored_attempt(user_id, exam_id="exam-1", score=10.0, time_spent_sec=300, percentage=50.0, submitted_at=T0):
    return Attempt(
        user_id=user_id,
        exam_id=exam_id,
        status=AttemptStatus.completed,
        started_at=submitted_at - timedelta(seconds=time_spent_sec),
        expires_at=submitted_at + timedelta(hours=1),
        submitted_at=submitted_at,
        score=score,
        percentage=percentage,
        correct_answers=0,
        wrong_answers=0,
        unattempted=0,
        time_spent_sec=time_spent_sec,
    )


def leaderboard_entry(user_id, exam_id="exam-1", score=10.0, time_taken=300, percentage=50.0, submitted_at=T0):
    return LeaderboardEntry(
        exam_id=exam_id,
        user_id=user_id,
        attempt_id=f"{exam_id}-{user_id}",
        score=score,
        percentage=percentage,
        time_taken=time_taken,
        submitted_at=submitted_at,
    )


@pytest.fixture
def repo():
    repo = InMemoryAttemptRepository()
    repo.add_exam(make_exam())
    return repo


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()
