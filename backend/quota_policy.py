import logging
import os
from typing import Optional

from errors import QuotaExceededError
from models import Account

logger = logging.getLogger(__name__)

FREE_DAILY_QUESTION_LIMIT = int(os.environ.get("FREE_DAILY_QUESTION_LIMIT", "10"))
UNLIMITED_PLANS = {"pro", "school"}


def daily_question_limit(account: Account) -> Optional[int]:
    """Questions allowed per calendar day. ``None`` means unlimited."""
    if account.subscription.plan in UNLIMITED_PLANS:
        return None
    return FREE_DAILY_QUESTION_LIMIT


def can_ask_questions(account: Account) -> bool:
    limit = daily_question_limit(account)
    if limit is None:
        return True
    return account.study_progress.questions_today < limit


def remaining_questions(account: Account) -> Optional[int]:
    limit = daily_question_limit(account)
    if limit is None:
        return None
    return limit - account.study_progress.questions_today


def ensure_can_ask_questions(account: Account) -> None:
    if can_ask_questions(account):
        return
    limit = daily_question_limit(account)
    used = account.study_progress.questions_today
    logger.info(
        "quota_exceeded user_id=%s plan=%s used=%s limit=%s",
        account.id,
        account.subscription.plan,
        used,
        limit,
    )
    raise QuotaExceededError(limit=limit, used=used)
