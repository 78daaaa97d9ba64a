import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

SUBJECTS = (
    "mathematics",
    "english",
    "kiswahili",
    "biology",
    "chemistry",
    "physics",
    "history",
    "geography",
    "cre",
)

Subject = Literal[
    "mathematics",
    "english",
    "kiswahili",
    "biology",
    "chemistry",
    "physics",
    "history",
    "geography",
    "cre",
]
Difficulty = Literal["easy", "medium", "hard"]
Plan = Literal["free", "pro", "school"]
SubscriptionStatus = Literal["active", "inactive", "cancelled", "expired"]
SessionStatus = Literal["active", "completed", "abandoned"]
PaymentMethod = Literal["mpesa", "card"]
PaymentStatus = Literal["pending", "completed", "failed"]
Role = Literal["student", "teacher", "admin"]

# Stored as ISO-8601 strings so range filters compare lexicographically.
IsoDatetime = Annotated[
    datetime,
    PlainSerializer(lambda value: value.isoformat(), return_type=str, when_used="json"),
]

FREE_PLAN_END_DATE = datetime(2099, 12, 31, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Snake_case in Mongo, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SubjectProgress(CamelModel):
    questions: int = 0
    score: int = 0


def _default_subject_progress() -> Dict[str, SubjectProgress]:
    return {subject: SubjectProgress() for subject in SUBJECTS}


class StudyProgress(CamelModel):
    total_questions_asked: int = 0
    questions_today: int = 0
    last_question_date: IsoDatetime = Field(default_factory=utc_now)
    study_streak: int = 0
    last_study_date: IsoDatetime = Field(default_factory=utc_now)
    subject_progress: Dict[str, SubjectProgress] = Field(default_factory=_default_subject_progress)


class PaymentRecord(CamelModel):
    amount: float
    currency: str = "KES"
    method: PaymentMethod
    transaction_id: str
    plan: Optional[Plan] = None
    gateway_reference: Optional[str] = None
    date: IsoDatetime = Field(default_factory=utc_now)
    status: PaymentStatus = "pending"


class Subscription(CamelModel):
    plan: Plan = "free"
    status: SubscriptionStatus = "active"
    start_date: IsoDatetime = Field(default_factory=utc_now)
    end_date: IsoDatetime = FREE_PLAN_END_DATE
    payment_history: List[PaymentRecord] = Field(default_factory=list)


class Preferences(CamelModel):
    language: Literal["en", "sw"] = "en"
    notifications: bool = True
    study_reminders: bool = True


class Account(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    first_name: str
    last_name: str
    email: str
    phone_number: str
    school: str
    role: Role = "student"
    password_hash: str = ""
    subscription: Subscription = Field(default_factory=Subscription)
    study_progress: StudyProgress = Field(default_factory=StudyProgress)
    preferences: Preferences = Field(default_factory=Preferences)
    is_verified: bool = False
    is_active: bool = True
    last_login: IsoDatetime = Field(default_factory=utc_now)
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[IsoDatetime] = None
    created_at: IsoDatetime = Field(default_factory=utc_now)
    updated_at: IsoDatetime = Field(default_factory=utc_now)
    version: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"password_hash", "password_reset_token", "password_reset_expires", "version"},
        )


class QuestionRecord(CamelModel):
    question: str
    answer: str
    user_response: Optional[str] = None
    is_correct: Optional[bool] = None
    difficulty: Difficulty = "medium"
    time_spent: float = 0
    timestamp: IsoDatetime = Field(default_factory=utc_now)


class SessionFeedback(CamelModel):
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=500)


class StudySession(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    subject: Subject
    topic: str
    questions: List[QuestionRecord] = Field(default_factory=list)
    total_questions: int = 0
    correct_answers: int = 0
    score: int = 0
    duration: int = 0
    status: SessionStatus = "active"
    start_time: IsoDatetime = Field(default_factory=utc_now)
    end_time: Optional[IsoDatetime] = None
    notes: Optional[str] = None
    feedback: Optional[SessionFeedback] = None
    created_at: IsoDatetime = Field(default_factory=utc_now)
    updated_at: IsoDatetime = Field(default_factory=utc_now)
    version: int = 0

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"version"})


class QuizAnswer(CamelModel):
    selected_option: Union[int, str]
    correct_option: Union[int, str]
    time_spent: float = Field(default=0, ge=0)


class QuizQuestion(CamelModel):
    question: str
    options: List[str]
    correct: int
    difficulty: Difficulty
    topic: str
