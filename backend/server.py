from fastapi import FastAPI, APIRouter, HTTPException, Depends, Query, Request, BackgroundTasks
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pathlib import Path
from pydantic import EmailStr, Field, StringConstraints, field_validator
from typing import Annotated, Any, Dict, List, Optional, Tuple
import os
import logging
import asyncio
import uuid
import re
import sys
import secrets
import hashlib
import math
from datetime import datetime, timezone, timedelta
import time
import random
import bcrypt
import jwt
import httpx

ROOT_DIR = Path(__file__).parent
# Ensure imports resolve to backend/* modules even when app is started from repo root.
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
load_dotenv(ROOT_DIR / ".env")

import account_store
import payment_ledger
import quiz_bank
import study_sessions
from errors import (
    AuthError,
    InputValidationError,
    NotFoundError,
    PaymentDeclinedError,
    ShuleCoachError,
)
from models import (
    Account,
    CamelModel,
    Difficulty,
    PaymentMethod,
    QuestionRecord,
    QuizAnswer,
    SessionFeedback,
    SessionStatus,
    Subject,
    utc_now,
)
from quota_policy import (
    can_ask_questions,
    daily_question_limit,
    ensure_can_ask_questions,
    remaining_questions,
)

mongo_url = os.environ["MONGO_URL"]
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ["DB_NAME"]]

JWT_SECRET = os.environ["JWT_SECRET"]
JWT_REFRESH_SECRET = os.environ.get("JWT_REFRESH_SECRET", "").strip() or JWT_SECRET
ACCESS_TOKEN_HOURS = int(os.environ.get("ACCESS_TOKEN_HOURS", "24"))
REFRESH_TOKEN_DAYS = int(os.environ.get("REFRESH_TOKEN_DAYS", "7"))
BCRYPT_SALT_ROUNDS = int(os.environ.get("BCRYPT_SALT_ROUNDS", "12"))
AUTH_PER_MIN_LIMIT = int(os.environ.get("AUTH_PER_MIN_LIMIT", "20"))
PASSWORD_RESET_TTL_MINUTES = int(os.environ.get("PASSWORD_RESET_TTL_MINUTES", "10"))
PASSWORD_RESET_TOKEN_BYTES = int(os.environ.get("PASSWORD_RESET_TOKEN_BYTES", "32"))
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000").rstrip("/")
BREVO_API_KEY = os.environ.get("BREVO_API_KEY", "")
BREVO_SENDER_EMAIL = os.environ.get("BREVO_SENDER_EMAIL", "")
BREVO_SENDER_NAME = os.environ.get("BREVO_SENDER_NAME", "ShuleCoach")
BREVO_TIMEOUT_SECONDS = float(os.environ.get("BREVO_TIMEOUT_SECONDS", "10"))
PAYMENT_CALLBACK_TOKEN = os.environ.get("PAYMENT_CALLBACK_TOKEN", "").strip()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)
payment_gateway: payment_ledger.PaymentGateway = payment_ledger.SimulatedGateway()
quiz_rng = random.Random()

app = FastAPI(title="ShuleCoach API")
api_router = APIRouter(prefix="/api")

PASSWORD_COMPOSITION = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")

PersonName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=50)]
SchoolName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=100)]
PhoneNumber = Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^254[0-9]{9}$")]
TopicText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]


def validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if not PASSWORD_COMPOSITION.match(value):
        raise ValueError("Password must contain at least one lowercase letter, one uppercase letter, and one number")
    return value


class UserRegister(CamelModel):
    first_name: PersonName
    last_name: PersonName
    email: EmailStr
    password: str
    phone_number: PhoneNumber
    school: SchoolName

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        return validate_password_strength(value)


class UserLogin(CamelModel):
    email: EmailStr
    password: str = Field(min_length=1)


class RefreshTokenRequest(CamelModel):
    refresh_token: Optional[str] = None


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = None


class PasswordResetRequest(CamelModel):
    email: EmailStr


class PasswordResetConfirmRequest(CamelModel):
    token: str = Field(min_length=1)
    password: str

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        return validate_password_strength(value)


class PreferencesUpdate(CamelModel):
    language: Optional[Annotated[str, StringConstraints(pattern=r"^(en|sw)$")]] = None
    notifications: Optional[bool] = None
    study_reminders: Optional[bool] = None


class UpdateProfileRequest(CamelModel):
    first_name: Optional[PersonName] = None
    last_name: Optional[PersonName] = None
    phone_number: Optional[PhoneNumber] = None
    school: Optional[SchoolName] = None
    preferences: Optional[PreferencesUpdate] = None


class IncrementQuestionsRequest(CamelModel):
    subject: Optional[Subject] = None


class StudySessionCreateRequest(CamelModel):
    subject: Subject
    topic: TopicText


class QuestionInput(CamelModel):
    question: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=500)]
    answer: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=2000)]
    user_response: Optional[Annotated[str, StringConstraints(max_length=1000)]] = None
    is_correct: Optional[bool] = None
    difficulty: Difficulty = "medium"
    time_spent: float = Field(default=0, ge=0)


class StudySessionUpdateRequest(CamelModel):
    questions: Optional[List[QuestionInput]] = None
    status: Optional[SessionStatus] = None
    notes: Optional[Annotated[str, StringConstraints(strip_whitespace=True, max_length=1000)]] = None
    feedback: Optional[SessionFeedback] = None


class QuizGenerateRequest(CamelModel):
    subject: Subject
    difficulty: Optional[Difficulty] = None
    count: int = Field(default=quiz_bank.DEFAULT_QUIZ_SIZE, ge=1, le=quiz_bank.MAX_QUIZ_SIZE)
    topic: Optional[TopicText] = None


class QuizSubmitRequest(CamelModel):
    session_id: str = Field(min_length=1)
    answers: List[QuizAnswer] = Field(min_length=1)
    time_spent: float = Field(default=0, ge=0)


class PaymentRequest(CamelModel):
    amount: float = Field(gt=0)
    currency: str = "KES"
    method: PaymentMethod
    phone_number: Optional[PhoneNumber] = None
    email: EmailStr
    plan: str = Field(min_length=1)


class PaymentCallbackRequest(CamelModel):
    transaction_id: Optional[str] = None
    status: str = Field(min_length=1)
    reference: str = Field(min_length=1)


class InMemoryRateLimiter:
    def __init__(self):
        self._buckets: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()

    async def check(self, key: str, limit: int, window_seconds: int) -> None:
        now = time.time()
        threshold = now - window_seconds
        async with self._lock:
            self._prune(threshold)
            events = self._buckets.get(key, [])
            if len(events) >= limit:
                raise HTTPException(status_code=429, detail="Too many requests. Please try again later.")
            events.append(now)
            self._buckets[key] = events

    def _prune(self, threshold: float) -> None:
        for key in list(self._buckets):
            events = [t for t in self._buckets[key] if t > threshold]
            if events:
                self._buckets[key] = events
            else:
                del self._buckets[key]


rate_limiter = InMemoryRateLimiter()


async def ensure_rate_limit(identity: str, bucket: str, limit: int) -> None:
    await rate_limiter.check(f"{bucket}:{identity}", limit=limit, window_seconds=60)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_SALT_ROUNDS)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_password_reset_token() -> Tuple[str, str, datetime]:
    token = secrets.token_hex(max(16, PASSWORD_RESET_TOKEN_BYTES))
    expires_at = utc_now() + timedelta(minutes=PASSWORD_RESET_TTL_MINUTES)
    return token, hash_reset_token(token), expires_at


def build_password_reset_link(token: str) -> str:
    return f"{FRONTEND_URL}/reset-password/{token}"


async def send_brevo_transactional_email(
    *,
    api_key: str,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    if not api_key:
        raise RuntimeError("Brevo API key is missing")
    headers = {
        "accept": "application/json",
        "api-key": api_key,
        "content-type": "application/json",
    }
    async with httpx.AsyncClient(timeout=BREVO_TIMEOUT_SECONDS) as http_client:
        response = await http_client.post("https://api.brevo.com/v3/smtp/email", headers=headers, json=payload)
        response.raise_for_status()
        if not response.text:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}


async def send_password_reset_email(email: str, full_name: str, reset_link: str) -> None:
    if not BREVO_API_KEY or not BREVO_SENDER_EMAIL:
        logger.warning("Password reset email skipped: Brevo not configured")
        return

    greeting_name = (full_name or "").strip().split(" ")[0] or "there"
    html_content = (
        f"<p>Habari {greeting_name},</p>"
        "<p>We received a request to reset your ShuleCoach password.</p>"
        f"<p><a href=\"{reset_link}\">Reset your password</a></p>"
        f"<p>This link expires in {PASSWORD_RESET_TTL_MINUTES} minutes and can only be used once.</p>"
        "<p>If you did not request this, you can ignore this email.</p>"
    )
    payload = {
        "sender": {"email": BREVO_SENDER_EMAIL, "name": BREVO_SENDER_NAME},
        "to": [{"email": email, "name": full_name or email}],
        "subject": "Reset your ShuleCoach password",
        "htmlContent": html_content,
    }
    await send_brevo_transactional_email(api_key=BREVO_API_KEY, payload=payload)


async def enqueue_password_reset_email(email: str, full_name: str, reset_link: str) -> None:
    try:
        await send_password_reset_email(email=email, full_name=full_name, reset_link=reset_link)
    except Exception as exc:
        logger.error("Password reset email delivery failed: %s", exc)


def create_token(user_id: str, token_type: str, expires_delta: timedelta, email: Optional[str] = None) -> Tuple[str, str, datetime]:
    jti = str(uuid.uuid4())
    expires_at = utc_now() + expires_delta
    payload = {
        "userId": user_id,
        "type": token_type,
        "jti": jti,
        "exp": expires_at,
    }
    if email:
        payload["email"] = email
    secret = JWT_REFRESH_SECRET if token_type == "refresh" else JWT_SECRET
    token = jwt.encode(payload, secret, algorithm="HS256")
    return token, jti, expires_at


def issue_token_pair(account: Account) -> Tuple[str, str]:
    access_token, _, _ = create_token(account.id, "access", timedelta(hours=ACCESS_TOKEN_HOURS), account.email)
    refresh_token, _, _ = create_token(account.id, "refresh", timedelta(days=REFRESH_TOKEN_DAYS))
    return access_token, refresh_token


async def is_token_revoked(jti: str) -> bool:
    revoked = await db.revoked_tokens.find_one({"jti": jti}, {"_id": 0, "jti": 1})
    return revoked is not None


async def revoke_token(jti: str, expires_at: datetime, token_type: str, reason: str = "manual") -> None:
    await db.revoked_tokens.update_one(
        {"jti": jti},
        {
            "$set": {
                "jti": jti,
                "token_type": token_type,
                "expires_at": expires_at.isoformat(),
                "reason": reason,
                "revoked_at": utc_now().isoformat(),
            }
        },
        upsert=True,
    )


async def decode_token(token: str, expected_type: str, check_revoked: bool = True) -> Dict[str, Any]:
    secret = JWT_REFRESH_SECRET if expected_type == "refresh" else JWT_SECRET
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")

    if payload.get("type") != expected_type:
        raise AuthError(f"Invalid token type: expected {expected_type}")

    jti = payload.get("jti")
    if not jti or not payload.get("userId"):
        raise AuthError("Malformed token")
    if check_revoked and await is_token_revoked(jti):
        raise AuthError("Token has been revoked")
    return payload


async def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Account:
    if credentials is None or not credentials.credentials:
        raise AuthError("Access denied. No token provided.")
    payload = await decode_token(credentials.credentials, "access")
    account = await account_store.find_account(db, payload["userId"])
    if account is None:
        raise AuthError("User not found")
    if not account.is_active:
        raise AuthError("Account deactivated")
    return account


def get_payment_gateway() -> payment_ledger.PaymentGateway:
    return payment_gateway


def public_user(account: Account) -> Dict[str, Any]:
    data = account.to_public()
    data["fullName"] = account.full_name
    data["isSubscriptionActive"] = payment_ledger.is_subscription_active(account.subscription)
    data["dailyQuestionLimit"] = daily_question_limit(account)
    return data


def public_subscription(account: Account) -> Dict[str, Any]:
    subscription = account.subscription.to_public()
    subscription["isActive"] = payment_ledger.is_subscription_active(account.subscription)
    return subscription


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"current": page, "pages": math.ceil(total / limit) if total else 0, "total": total}


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception(
            "request_id=%s method=%s path=%s status=500 duration_ms=%s error=%s",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
            str(e),
        )
        raise
    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_id=%s method=%s path=%s status=%s duration_ms=%s",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.exception_handler(ShuleCoachError)
async def domain_exception_handler(request: Request, exc: ShuleCoachError):
    logger.warning(
        "DomainError request_id=%s path=%s status=%s error=%s detail=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.status_code,
        exc.error,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    details = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        details.append({"field": ".".join(location), "message": error.get("msg", "Invalid value")})
    logger.warning(
        "ValidationError request_id=%s path=%s fields=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        [detail["field"] for detail in details],
    )
    return JSONResponse(
        status_code=400,
        content={"detail": "Validation failed", "error": "validation_failed", "details": details},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(
        "HTTPException request_id=%s path=%s status=%s detail=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.status_code,
        exc.detail,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    logger.exception("Unhandled server error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@api_router.post("/auth/register", status_code=201)
async def register(user_data: UserRegister, request: Request):
    ip = request.client.host if request.client else "unknown"
    await ensure_rate_limit(ip, "auth_register", AUTH_PER_MIN_LIMIT)
    normalized_email = user_data.email.lower()

    existing_user = await db.users.find_one({"email": normalized_email}, {"_id": 0, "id": 1})
    if existing_user:
        raise InputValidationError(
            "User already exists with this email",
            details=[{"field": "email", "message": "Email is already registered"}],
        )

    now = utc_now()
    account = Account(
        first_name=user_data.first_name,
        last_name=user_data.last_name,
        email=normalized_email,
        phone_number=user_data.phone_number,
        school=user_data.school,
        password_hash=hash_password(user_data.password),
        last_login=now,
        created_at=now,
        updated_at=now,
    )
    await account_store.insert_account(db, account)
    access_token, refresh_token = issue_token_pair(account)
    logger.info("user_registered user_id=%s school=%s", account.id, account.school)
    return {
        "message": "User registered successfully",
        "user": public_user(account),
        "token": access_token,
        "refreshToken": refresh_token,
    }


@api_router.post("/auth/login")
async def login(credentials: UserLogin, request: Request):
    ip = request.client.host if request.client else "unknown"
    await ensure_rate_limit(ip, "auth_login", AUTH_PER_MIN_LIMIT)

    account = await account_store.find_account_by_email(db, credentials.email)
    if account is None or not verify_password(credentials.password, account.password_hash):
        raise AuthError("Invalid credentials")
    if not account.is_active:
        raise AuthError("Your account has been deactivated. Please contact support.")

    now = utc_now()
    account = await account_store.mutate_account(
        db, account.id, lambda acc: setattr(acc, "last_login", now), now
    )
    access_token, refresh_token = issue_token_pair(account)
    return {
        "message": "Login successful",
        "user": public_user(account),
        "token": access_token,
        "refreshToken": refresh_token,
    }


@api_router.post("/auth/refresh")
async def refresh_tokens(payload: RefreshTokenRequest):
    if not payload.refresh_token:
        raise AuthError("Refresh token required")
    refresh_payload = await decode_token(payload.refresh_token, "refresh")
    account = await account_store.find_account(db, refresh_payload["userId"])
    if account is None or not account.is_active:
        raise AuthError("Invalid refresh token")

    access_token, _, _ = create_token(account.id, "access", timedelta(hours=ACCESS_TOKEN_HOURS), account.email)
    return {"message": "Token refreshed successfully", "token": access_token}


@api_router.get("/auth/me")
async def get_me(current_account: Account = Depends(get_current_account)):
    return {"user": public_user(current_account)}


@api_router.post("/auth/logout")
async def logout(
    request: Optional[LogoutRequest] = None,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
):
    if credentials is None or not credentials.credentials:
        raise AuthError("Access denied. No token provided.")
    access_payload = await decode_token(credentials.credentials, "access")
    access_exp = datetime.fromtimestamp(access_payload["exp"], tz=timezone.utc)
    await revoke_token(access_payload["jti"], access_exp, "access", reason="logout")

    if request and request.refresh_token:
        refresh_payload = await decode_token(request.refresh_token, "refresh")
        refresh_exp = datetime.fromtimestamp(refresh_payload["exp"], tz=timezone.utc)
        await revoke_token(refresh_payload["jti"], refresh_exp, "refresh", reason="logout")

    logger.info("user_logged_out user_id=%s", access_payload["userId"])
    return {"message": "Logged out successfully"}


@api_router.post("/auth/forgot-password")
async def forgot_password(payload: PasswordResetRequest, request: Request, background_tasks: BackgroundTasks):
    ip = request.client.host if request.client else "unknown"
    await ensure_rate_limit(ip, "auth_forgot_password", AUTH_PER_MIN_LIMIT)

    account = await account_store.find_account_by_email(db, payload.email)
    if account is not None and account.is_active:
        token, token_hash, expires_at = create_password_reset_token()

        def store_reset_token(acc: Account) -> None:
            acc.password_reset_token = token_hash
            acc.password_reset_expires = expires_at

        await account_store.mutate_account(db, account.id, store_reset_token)
        background_tasks.add_task(
            enqueue_password_reset_email,
            account.email,
            account.full_name,
            build_password_reset_link(token),
        )
        logger.info("password_reset_requested user_id=%s", account.id)

    # Always return the same response to prevent account enumeration.
    return {"message": "If an account with that email exists, a password reset link has been sent."}


@api_router.post("/auth/reset-password")
async def reset_password(payload: PasswordResetConfirmRequest):
    now = utc_now()
    user_doc = await db.users.find_one(
        {
            "password_reset_token": hash_reset_token(payload.token),
            "password_reset_expires": {"$gt": now.isoformat()},
        },
        {"_id": 0, "id": 1},
    )
    if not user_doc:
        raise InputValidationError("Reset token is invalid or expired")

    new_hash = hash_password(payload.password)

    def apply_new_password(acc: Account) -> None:
        acc.password_hash = new_hash
        acc.password_reset_token = None
        acc.password_reset_expires = None

    await account_store.mutate_account(db, user_doc["id"], apply_new_password, now)
    logger.info("password_reset_completed user_id=%s", user_doc["id"])
    return {"message": "Password reset successful. Please sign in with your new password."}


@api_router.get("/users/profile")
async def get_profile(current_account: Account = Depends(get_current_account)):
    progress = current_account.study_progress
    return {
        "user": public_user(current_account),
        "stats": {
            "totalQuestions": progress.total_questions_asked,
            "questionsToday": progress.questions_today,
            "studyStreak": progress.study_streak,
            "canAskQuestions": can_ask_questions(current_account),
            "dailyLimit": daily_question_limit(current_account),
            "isSubscriptionActive": payment_ledger.is_subscription_active(current_account.subscription),
        },
    }


@api_router.put("/users/profile")
async def update_profile(payload: UpdateProfileRequest, current_account: Account = Depends(get_current_account)):
    updates = payload.model_dump(exclude_none=True, exclude={"preferences"})
    preference_updates = payload.preferences.model_dump(exclude_none=True) if payload.preferences else {}

    def apply_profile(acc: Account) -> None:
        for field_name, value in updates.items():
            setattr(acc, field_name, value)
        for field_name, value in preference_updates.items():
            setattr(acc.preferences, field_name, value)

    account = await account_store.mutate_account(db, current_account.id, apply_profile)
    return {"message": "Profile updated successfully", "user": public_user(account)}


@api_router.get("/users/progress")
async def get_progress(current_account: Account = Depends(get_current_account)):
    recent, subject_breakdown = await asyncio.gather(
        study_sessions.recent_sessions(db, current_account.id),
        study_sessions.subject_stats(db, current_account.id),
    )
    progress = current_account.study_progress
    return {
        "progress": progress.to_public(),
        "recentSessions": [session.to_public() for session in recent],
        "subjectStats": subject_breakdown,
        "streakInfo": {
            "current": progress.study_streak,
            "lastStudy": progress.last_study_date.isoformat(),
        },
    }


@api_router.post("/users/increment-questions")
async def increment_questions(
    payload: Optional[IncrementQuestionsRequest] = None,
    current_account: Account = Depends(get_current_account),
):
    subject = payload.subject if payload else None
    now = utc_now()

    def record(acc: Account) -> None:
        account_store.record_question(acc, subject, now)
        account_store.update_study_streak(acc, now)

    account = await account_store.mutate_account(db, current_account.id, record, now)
    progress = account.study_progress
    return {
        "message": "Question count updated",
        "questionsToday": progress.questions_today,
        "totalQuestions": progress.total_questions_asked,
        "canAskMore": can_ask_questions(account),
        "studyStreak": progress.study_streak,
    }


@api_router.delete("/users/account")
async def deactivate_account(current_account: Account = Depends(get_current_account)):
    await account_store.mutate_account(db, current_account.id, lambda acc: setattr(acc, "is_active", False))
    logger.info("account_deactivated user_id=%s", current_account.id)
    return {"message": "Account deactivated successfully"}


@api_router.post("/study/session", status_code=201)
async def create_study_session(
    payload: StudySessionCreateRequest,
    current_account: Account = Depends(get_current_account),
):
    session = study_sessions.start_session(current_account, payload.subject, payload.topic)
    await study_sessions.insert_session(db, session)
    return {"message": "Study session created successfully", "session": session.to_public()}


@api_router.get("/study/sessions")
async def list_study_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    subject: Optional[Subject] = None,
    status: Optional[SessionStatus] = None,
    current_account: Account = Depends(get_current_account),
):
    sessions, total = await study_sessions.list_sessions(
        db, current_account.id, page=page, limit=limit, subject=subject, status=status
    )
    return {
        "sessions": [session.to_public() for session in sessions],
        "pagination": pagination(page, limit, total),
    }


@api_router.get("/study/sessions/{session_id}")
async def get_study_session(session_id: str, current_account: Account = Depends(get_current_account)):
    session = await study_sessions.get_session(db, current_account.id, session_id)
    return {"session": session.to_public()}


@api_router.put("/study/sessions/{session_id}")
async def update_study_session(
    session_id: str,
    payload: StudySessionUpdateRequest,
    current_account: Account = Depends(get_current_account),
):
    now = utc_now()
    questions = None
    if payload.questions is not None:
        questions = [QuestionRecord(**item.model_dump(), timestamp=now) for item in payload.questions]
    session = await study_sessions.mutate_session(
        db,
        current_account.id,
        session_id,
        lambda current: study_sessions.apply_session_update(
            current,
            questions=questions,
            status=payload.status,
            notes=payload.notes,
            feedback=payload.feedback,
            now=now,
        ),
        now,
    )
    return {"message": "Study session updated successfully", "session": session.to_public()}


@api_router.post("/study/sessions/{session_id}/questions")
async def add_session_question(
    session_id: str,
    payload: QuestionInput,
    current_account: Account = Depends(get_current_account),
):
    now = utc_now()
    session = await study_sessions.get_session(db, current_account.id, session_id)
    record = QuestionRecord(**payload.model_dump(), timestamp=now)
    session, account = await study_sessions.add_question(db, session, record, now)
    return {
        "message": "Question added successfully",
        "session": session.to_public(),
        "questionCount": account.study_progress.questions_today,
    }


@api_router.get("/study/stats")
async def get_study_stats(
    timeframe: int = Query(30, ge=1, le=3650),
    current_account: Account = Depends(get_current_account),
):
    stats = await study_sessions.study_stats(db, current_account.id, timeframe)
    return {
        "stats": stats,
        "userProgress": current_account.study_progress.to_public(),
        "timeframe": f"{timeframe} days",
    }


@api_router.post("/quiz/generate")
async def generate_quiz(payload: QuizGenerateRequest, current_account: Account = Depends(get_current_account)):
    ensure_can_ask_questions(current_account)
    questions = quiz_bank.select_questions(
        payload.subject,
        difficulty=payload.difficulty,
        topic=payload.topic,
        count=payload.count,
        rng=quiz_rng,
    )
    return {
        "questions": [question.to_public() for question in questions],
        "subject": payload.subject,
        "difficulty": payload.difficulty,
        "topic": payload.topic,
        "count": len(questions),
        "remainingQuestions": remaining_questions(current_account),
    }


@api_router.post("/quiz/submit")
async def submit_quiz(payload: QuizSubmitRequest, current_account: Account = Depends(get_current_account)):
    now = utc_now()
    outcome: Dict[str, Any] = {}

    def finish(current) -> None:
        outcome["results"] = study_sessions.submit_quiz(current, payload.answers, payload.time_spent, now)

    session = await study_sessions.mutate_session(db, current_account.id, payload.session_id, finish, now)
    results = outcome["results"]
    await account_store.mutate_account(
        db,
        current_account.id,
        lambda acc: study_sessions.apply_quiz_progress(acc, session, len(payload.answers), now),
        now,
    )
    logger.info(
        "quiz_submitted user_id=%s session_id=%s score=%s",
        current_account.id,
        session.id,
        session.score,
    )
    return {"message": "Quiz submitted successfully", "results": results, "session": session.to_public()}


@api_router.get("/quiz/history")
async def quiz_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    subject: Optional[Subject] = None,
    current_account: Account = Depends(get_current_account),
):
    sessions, total = await study_sessions.list_sessions(
        db, current_account.id, page=page, limit=limit, subject=subject, status="completed"
    )
    history = [
        {
            "id": session.id,
            "subject": session.subject,
            "topic": session.topic,
            "score": session.score,
            "totalQuestions": session.total_questions,
            "correctAnswers": session.correct_answers,
            "duration": session.duration,
            "createdAt": session.created_at.isoformat(),
        }
        for session in sessions
    ]
    return {"quizzes": history, "pagination": pagination(page, limit, total)}


@api_router.post("/payments/intasend")
async def create_payment(
    payload: PaymentRequest,
    current_account: Account = Depends(get_current_account),
    gateway: payment_ledger.PaymentGateway = Depends(get_payment_gateway),
):
    now = utc_now()
    record, result = await payment_ledger.charge_subscription(
        current_account,
        amount=payload.amount,
        method=payload.method,
        plan_label=payload.plan,
        gateway=gateway,
        currency=payload.currency,
        email=payload.email,
        phone_number=payload.phone_number,
        now=now,
    )
    account = await account_store.mutate_account(
        db, current_account.id, lambda acc: payment_ledger.apply_payment(acc, record, now), now
    )
    if record.status == "failed":
        raise PaymentDeclinedError(result.message or "Payment failed. Please try again.", record.transaction_id)
    if record.status == "pending":
        return JSONResponse(
            status_code=202,
            content={
                "success": True,
                "pending": True,
                "message": result.message or "Payment initiated. Confirm the prompt on your phone.",
                "transaction_id": record.transaction_id,
                "subscription": public_subscription(account),
            },
        )
    return {
        "success": True,
        "message": "Payment processed successfully",
        "transaction_id": record.transaction_id,
        "subscription": public_subscription(account),
    }


@api_router.get("/payments/history")
async def payment_history(current_account: Account = Depends(get_current_account)):
    subscription = current_account.subscription
    return {
        "paymentHistory": [payment.to_public() for payment in subscription.payment_history],
        "currentSubscription": {
            "plan": subscription.plan,
            "status": subscription.status,
            "startDate": subscription.start_date.isoformat(),
            "endDate": subscription.end_date.isoformat(),
            "isActive": payment_ledger.is_subscription_active(subscription),
        },
    }


@api_router.get("/payments/plans")
async def subscription_plans():
    return {
        "plans": [
            {
                "id": plan.plan_id,
                "name": plan.name,
                "nameSw": plan.name_sw,
                "amount": plan.amount_kes,
                "currency": "KES",
                "cycleDays": plan.cycle_days,
            }
            for plan in payment_ledger.get_subscription_plans()
        ]
    }


@api_router.post("/payments/callback")
async def payment_callback(payload: PaymentCallbackRequest, request: Request):
    if PAYMENT_CALLBACK_TOKEN:
        presented = request.headers.get("X-Callback-Token", "")
        if not secrets.compare_digest(presented, PAYMENT_CALLBACK_TOKEN):
            raise AuthError("Invalid callback token")
    account_id = payment_ledger.parse_reference(payload.reference)
    if account_id is None:
        raise InputValidationError(
            "Invalid payment reference",
            details=[{"field": "reference", "message": "Unrecognised reference format"}],
        )
    account = await account_store.find_account(db, account_id)
    if account is None:
        raise NotFoundError("User not found")

    if not payment_ledger.is_pending_payment(account, payload.reference):
        logger.warning("payment_callback_ignored reference=%s status=%s", payload.reference, payload.status)
        return {"message": "Callback processed successfully"}

    now = utc_now()
    await account_store.mutate_account(
        db,
        account_id,
        lambda acc: payment_ledger.apply_callback(acc, payload.reference, payload.status, payload.transaction_id, now),
        now,
    )
    return {"message": "Callback processed successfully"}


@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "ShuleCoach API"}


@app.on_event("startup")
async def startup_checks():
    if ACCESS_TOKEN_HOURS <= 0 or REFRESH_TOKEN_DAYS <= 0:
        raise RuntimeError("ACCESS_TOKEN_HOURS and REFRESH_TOKEN_DAYS must be greater than zero")
    if BCRYPT_SALT_ROUNDS < 4 or BCRYPT_SALT_ROUNDS > 31:
        raise RuntimeError("BCRYPT_SALT_ROUNDS must be between 4 and 31")
    if PASSWORD_RESET_TTL_MINUTES <= 0:
        raise RuntimeError("PASSWORD_RESET_TTL_MINUTES must be greater than zero")
    if not 0 <= payment_ledger.PAYMENT_SIMULATED_SUCCESS_RATE <= 1:
        raise RuntimeError("PAYMENT_SIMULATED_SUCCESS_RATE must be between 0 and 1")
    if payment_ledger.SUBSCRIPTION_CYCLE_DAYS <= 0:
        raise RuntimeError("SUBSCRIPTION_CYCLE_DAYS must be greater than zero")
    if BREVO_API_KEY and not BREVO_SENDER_EMAIL:
        raise RuntimeError("BREVO_SENDER_EMAIL must be configured when BREVO_API_KEY is set")
    if not BREVO_API_KEY:
        logger.warning("BREVO_API_KEY not set; password reset emails will be skipped")

    await db.users.create_index("id", unique=True)
    await db.users.create_index("email", unique=True)
    await db.users.create_index("password_reset_token", sparse=True)
    await db.study_sessions.create_index("id", unique=True)
    await db.study_sessions.create_index([("user_id", 1), ("created_at", -1)])
    await db.study_sessions.create_index([("user_id", 1), ("subject", 1)])
    await db.study_sessions.create_index([("status", 1), ("start_time", 1)])
    await db.revoked_tokens.create_index("jti", unique=True)
    await db.revoked_tokens.create_index("expires_at")

    logger.info("Startup checks completed")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()


app.include_router(api_router)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)
