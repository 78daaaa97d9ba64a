import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pymongo.errors import DuplicateKeyError

from errors import ConcurrentUpdateError, InputValidationError, NotFoundError
from models import Account, utc_now
from quota_policy import ensure_can_ask_questions

logger = logging.getLogger(__name__)

MUTATION_ATTEMPTS = 3


def day_key(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d")


def apply_daily_rollover(account: Account, now: datetime) -> bool:
    progress = account.study_progress
    if progress.questions_today and day_key(progress.last_question_date) != day_key(now):
        progress.questions_today = 0
        return True
    return False


def expire_lapsed_subscription(account: Account, now: datetime) -> bool:
    subscription = account.subscription
    if subscription.plan == "free" or subscription.status != "active":
        return False
    if subscription.end_date > now:
        return False
    logger.info(
        "subscription_expired user_id=%s plan=%s end_date=%s",
        account.id,
        subscription.plan,
        subscription.end_date.isoformat(),
    )
    subscription.plan = "free"
    subscription.status = "expired"
    return True


def normalize_account(account: Account, now: datetime) -> Account:
    apply_daily_rollover(account, now)
    expire_lapsed_subscription(account, now)
    return account


def increment_question_count(
    account: Account, subject: Optional[str] = None, now: Optional[datetime] = None
) -> Account:
    now = now or utc_now()
    apply_daily_rollover(account, now)
    progress = account.study_progress
    progress.total_questions_asked += 1
    progress.questions_today += 1
    progress.last_question_date = now
    if subject and subject in progress.subject_progress:
        progress.subject_progress[subject].questions += 1
    return account


def record_question(account: Account, subject: Optional[str] = None, now: Optional[datetime] = None) -> Account:
    """Quota check followed by the counter increment, on the same snapshot."""
    now = now or utc_now()
    apply_daily_rollover(account, now)
    ensure_can_ask_questions(account)
    return increment_question_count(account, subject, now)


def update_study_streak(account: Account, now: Optional[datetime] = None) -> Account:
    now = now or utc_now()
    progress = account.study_progress
    today = now.astimezone(timezone.utc).date()
    last_day = progress.last_study_date.astimezone(timezone.utc).date()
    gap = (today - last_day).days
    if gap == 1:
        progress.study_streak += 1
    elif gap > 1:
        progress.study_streak = 1
    progress.last_study_date = now
    return account


async def find_account(db, user_id: str, now: Optional[datetime] = None) -> Optional[Account]:
    doc = await db.users.find_one({"id": user_id}, {"_id": 0})
    if not doc:
        return None
    return normalize_account(Account.model_validate(doc), now or utc_now())


async def get_account(db, user_id: str, now: Optional[datetime] = None) -> Account:
    account = await find_account(db, user_id, now)
    if account is None:
        raise NotFoundError("User not found")
    return account


async def find_account_by_email(db, email: str, now: Optional[datetime] = None) -> Optional[Account]:
    doc = await db.users.find_one({"email": email.strip().lower()}, {"_id": 0})
    if not doc:
        return None
    return normalize_account(Account.model_validate(doc), now or utc_now())


async def insert_account(db, account: Account) -> Account:
    try:
        await db.users.insert_one(account.to_document())
    except DuplicateKeyError:
        raise InputValidationError(
            "User already exists with this email",
            details=[{"field": "email", "message": "Email is already registered"}],
        )
    return account


async def save_account(db, account: Account, now: Optional[datetime] = None) -> Account:
    now = now or utc_now()
    apply_daily_rollover(account, now)
    expected_version = account.version
    account.version = expected_version + 1
    account.updated_at = now
    result = await db.users.replace_one(
        {"id": account.id, "version": expected_version},
        account.to_document(),
    )
    if result.matched_count != 1:
        account.version = expected_version
        raise ConcurrentUpdateError("Account was modified by another request. Please retry.")
    return account


async def mutate_account(
    db,
    user_id: str,
    mutation: Callable[[Account], Any],
    now: Optional[datetime] = None,
) -> Account:
    """Load, mutate and write an account, retrying when another writer wins."""
    for attempt in range(1, MUTATION_ATTEMPTS + 1):
        account = await get_account(db, user_id, now)
        mutation(account)
        try:
            return await save_account(db, account, now)
        except ConcurrentUpdateError:
            logger.warning(
                "account_write_conflict user_id=%s attempt=%s/%s",
                user_id,
                attempt,
                MUTATION_ATTEMPTS,
            )
    raise ConcurrentUpdateError("Account is busy. Please retry.")
