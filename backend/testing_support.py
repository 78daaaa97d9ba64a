import os
from datetime import datetime, timedelta, timezone
from typing import Any

from mongomock_motor import AsyncMongoMockClient

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "shulecoach_test")
os.environ.setdefault("JWT_SECRET", "test-access-secret")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret")
os.environ.setdefault("BCRYPT_SALT_ROUNDS", "4")
os.environ.setdefault("AUTH_PER_MIN_LIMIT", "1000")

from models import Account, StudyProgress, Subscription  # noqa: E402

FIXED_NOW = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)


def fresh_db():
    return AsyncMongoMockClient()["shulecoach_test"]


def make_account(plan: str = "free", questions_today: int = 0, now: datetime = FIXED_NOW, **overrides: Any) -> Account:
    subscription = Subscription(plan=plan, start_date=now - timedelta(days=1))
    if plan != "free":
        subscription.end_date = now + timedelta(days=29)
    fields = {
        "first_name": "Amina",
        "last_name": "Wanjiru",
        "email": "amina@example.co.ke",
        "phone_number": "254712345678",
        "school": "Alliance Girls High School",
        "subscription": subscription,
        "study_progress": StudyProgress(
            questions_today=questions_today,
            total_questions_asked=questions_today,
            last_question_date=now,
            last_study_date=now,
        ),
        "created_at": now,
        "updated_at": now,
    }
    fields.update(overrides)
    return Account(**fields)
