from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

OptionKey = Literal["A", "B", "C", "D"]
OPTION_KEYS: tuple[str, ...] = ("A", "B", "C", "D")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes coming back from a store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AttemptStatus(str, Enum):
    in_progress = "in_progress"
    completed = "completed"


class ViolationType(str, Enum):
    tab_switch = "tab_switch"
    window_blur = "window_blur"
    devtools = "devtools"
    copy_attempt = "copy_attempt"
    right_click = "right_click"
    fullscreen_exit = "fullscreen_exit"
    back_navigation = "back_navigation"
    refresh_attempt = "refresh_attempt"
    paste_attempt = "paste_attempt"
    cut_attempt = "cut_attempt"


# ===== Exam snapshot (owned by the content service, read-only here) =====


class ExamOption(BaseModel):
    key: OptionKey
    text: str
    image_url: Optional[str] = None
    is_correct: bool = False


class ExamQuestion(BaseModel):
    question_id: str
    statement: str
    image_url: Optional[str] = None
    topic: str = "Other"
    marks: float = 1
    negative_marks: float = 0
    difficulty: Optional[str] = None
    explanation: Optional[str] = None
    options: list[ExamOption] = Field(default_factory=list)

    @property
    def correct_option(self) -> Optional[str]:
        for option in self.options:
            if option.is_correct:
                return option.key
        return None


class Exam(BaseModel):
    exam_id: str
    title: str
    slug: Optional[str] = None
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    duration_minutes: int = Field(ge=1)
    total_marks: float
    passing_marks: Optional[float] = None
    instructions: Optional[str] = None
    is_published: bool = False
    is_free: bool = False
    randomize_order: bool = False
    allow_review: bool = True
    total_attempts: int = 0
    questions: list[ExamQuestion] = Field(default_factory=list)

    def question_map(self) -> dict[str, ExamQuestion]:
        return {q.question_id: q for q in self.questions}


class Purchase(BaseModel):
    user_id: str
    exam_id: str
    status: str = "active"
    valid_until: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        if self.status != "active":
            return False
        return self.valid_until is None or as_utc(self.valid_until) >= now


# ===== Attempt store =====


class AnswerEntry(BaseModel):
    selected_option: Optional[OptionKey] = None
    marked_for_review: bool = False
    answered_at: datetime = Field(default_factory=utcnow)


class SuspiciousFlag(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    type: ViolationType
    details: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    count: Optional[int] = None


class TopicPerformance(BaseModel):
    topic: str
    correct: int = 0
    wrong: int = 0
    total: int = 0
    accuracy: float = 0.0


class ScoreResult(BaseModel):
    score: float
    percentage: float
    correct_answers: int
    wrong_answers: int
    unattempted: int
    time_spent_sec: int
    topic_performance: list[TopicPerformance] = Field(default_factory=list)


class Attempt(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    attempt_id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    exam_id: str
    status: AttemptStatus = AttemptStatus.in_progress

    started_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    submitted_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    question_order: list[str] = Field(default_factory=list)
    answers: dict[str, AnswerEntry] = Field(default_factory=dict)

    suspicious_flags: list[SuspiciousFlag] = Field(default_factory=list)
    tab_switch_count: int = 0
    ip_address: Optional[str] = None

    # Populated by the scoring worker; None means "not scored yet".
    score: Optional[float] = None
    percentage: Optional[float] = None
    correct_answers: Optional[int] = None
    wrong_answers: Optional[int] = None
    unattempted: Optional[int] = None
    time_spent_sec: Optional[int] = None
    topic_performance: Optional[list[TopicPerformance]] = None
    scored_at: Optional[datetime] = None
    rank: Optional[int] = None
    percentile: Optional[float] = None
    # Set once rank, percentile and the leaderboard entry are all written.
    ranked_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.status == AttemptStatus.completed

    @property
    def is_scored(self) -> bool:
        return self.score is not None

    @property
    def is_ranked(self) -> bool:
        return self.ranked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now > as_utc(self.expires_at)


class LeaderboardEntry(BaseModel):
    exam_id: str
    user_id: str
    attempt_id: str
    score: float
    percentage: float
    rank: Optional[int] = None
    time_taken: int
    submitted_at: datetime


class UserTotal(BaseModel):
    user_id: str
    total_score: float
    avg_percentage: float
    exams_attempted: int


# ===== Request DTOs =====


class StartAttemptRequest(BaseModel):
    exam_id: str = Field(..., min_length=1)


class SaveAnswerRequest(BaseModel):
    question_id: str = Field(..., min_length=1)
    selected_option: Optional[OptionKey] = None
    marked_for_review: bool = False


class SaveBatchRequest(BaseModel):
    answers: list[SaveAnswerRequest]


class ViolationRequest(BaseModel):
    type: ViolationType
    details: Optional[str] = None
    count: Optional[int] = None


# ===== Response DTOs =====


class PublicOption(BaseModel):
    key: str
    text: str
    image_url: Optional[str] = None


class PublicQuestion(BaseModel):
    """Question payload shown while an attempt is open: no answer key."""

    id: str
    sequence: int
    statement: str
    image_url: Optional[str] = None
    topic: str
    marks: float
    negative_marks: float
    difficulty: Optional[str] = None
    options: list[PublicOption]


class AttemptSession(BaseModel):
    attempt_id: str
    exam_id: str
    exam_title: str
    exam_slug: Optional[str] = None
    subject: str
    duration: int
    total_questions: int
    total_marks: float
    passing_marks: Optional[float] = None
    instructions: Optional[str] = None
    randomize_order: bool
    allow_review: bool
    started_at: datetime
    expires_at: datetime
    questions: list[PublicQuestion]
    saved_answers: dict[str, AnswerEntry] = Field(default_factory=dict)


class SaveAnswerResponse(BaseModel):
    success: bool = True
    message: str = "Answer saved successfully"


class SaveBatchResponse(BaseModel):
    success: bool = True
    saved_count: int


class ViolationResponse(BaseModel):
    success: bool = True
    recorded: bool
    violation_count: int
    tab_switch_count: int
    should_terminate: bool
    warning: Optional[str] = None


class SubmitResponse(BaseModel):
    success: bool = True
    attempt_id: str
    processing: bool = True
    submitted_at: datetime


class ResultOption(BaseModel):
    key: str
    text: str
    image_url: Optional[str] = None
    is_correct: bool


class QuestionResult(BaseModel):
    question_id: str
    statement: str
    image_url: Optional[str] = None
    topic: str
    options: list[ResultOption]
    your_answer: Optional[str] = None
    correct_answer: Optional[str] = None
    is_correct: bool
    explanation: Optional[str] = None
    marked_for_review: bool = False
    marks: float
    negative_marks: float


class ResultProcessing(BaseModel):
    attempt_id: str
    status: str
    processing: bool = True


class AttemptResult(BaseModel):
    attempt_id: str
    exam_id: str
    exam_title: str
    processing: bool = False
    score: float
    total_marks: float
    passing_marks: Optional[float] = None
    percentage: float
    percentile: Optional[float] = None
    correct_answers: int
    wrong_answers: int
    unattempted: int
    time_spent: int
    submitted_at: Optional[datetime] = None
    rank: Optional[int] = None
    total_attempts: int
    topic_wise_performance: list[TopicPerformance]
    question_results: list[QuestionResult]
    suspicious_flags: list[SuspiciousFlag]
    tab_switch_count: int


class LeaderboardRow(BaseModel):
    rank: int
    user_id: str
    score: float
    percentage: float
    time_taken: Optional[int] = None
    submitted_at: Optional[datetime] = None
    exams_attempted: Optional[int] = None
    is_current_user: bool = False


class LeaderboardResponse(BaseModel):
    scope: Literal["exam", "subject", "global"]
    scope_id: Optional[str] = None
    title: str
    entries: list[LeaderboardRow]
    current_user_entry: Optional[LeaderboardRow] = None
    total_participants: int
    last_updated: datetime = Field(default_factory=utcnow)


class GlobalRankResponse(BaseModel):
    user_id: str
    rank: Optional[int] = None
    total_score: Optional[float] = None
    total_participants: int
