import logging
import math
import os
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import account_store
from errors import ConcurrentUpdateError, NotFoundError, SessionStateError
from models import (
    SUBJECTS,
    Account,
    QuestionRecord,
    QuizAnswer,
    SessionFeedback,
    StudySession,
    utc_now,
)
from quota_policy import ensure_can_ask_questions

logger = logging.getLogger(__name__)

SESSION_ABANDON_AFTER_HOURS = int(os.environ.get("SESSION_ABANDON_AFTER_HOURS", "24"))
RECENT_SESSIONS_LIMIT = 10


def round_half_up(numerator: float, denominator: float) -> int:
    return int(math.floor(numerator / denominator + 0.5))


def score_percentage(correct: int, total: int) -> int:
    # Integer form of floor(correct / total * 100 + 0.5), free of float drift.
    return (200 * correct + total) // (2 * total)


def recompute_score(session: StudySession) -> StudySession:
    if session.total_questions > 0:
        session.score = score_percentage(session.correct_answers, session.total_questions)
    return session


def count_correct(questions: Sequence[QuestionRecord]) -> int:
    return sum(1 for question in questions if question.is_correct)


def ensure_active(session: StudySession) -> None:
    if session.status != "active":
        raise SessionStateError(f"Study session is already {session.status}", status=session.status)


def start_session(account: Account, subject: str, topic: str, now: Optional[datetime] = None) -> StudySession:
    ensure_can_ask_questions(account)
    now = now or utc_now()
    return StudySession(
        user_id=account.id,
        subject=subject,
        topic=topic.strip(),
        start_time=now,
        created_at=now,
        updated_at=now,
    )


def append_question(session: StudySession, record: QuestionRecord) -> StudySession:
    ensure_active(session)
    session.questions.append(record)
    session.total_questions = len(session.questions)
    if record.is_correct is not None:
        session.correct_answers = count_correct(session.questions)
    return session


def score_answers(answers: Sequence[QuizAnswer]) -> Tuple[int, int]:
    correct = sum(1 for answer in answers if answer.selected_option == answer.correct_option)
    return correct, len(answers)


def _ensure_can_finish(session: StudySession) -> None:
    ensure_active(session)
    if session.end_time is not None:
        raise SessionStateError("Study session has already ended", status=session.status)


def complete_session(
    session: StudySession,
    final_answers: Optional[Sequence[QuizAnswer]] = None,
    now: Optional[datetime] = None,
) -> StudySession:
    _ensure_can_finish(session)
    session.status = "completed"
    session.end_time = now or utc_now()
    if final_answers is not None:
        correct, total = score_answers(final_answers)
        session.correct_answers = correct
        session.total_questions = total
    return recompute_score(session)


def abandon_session(session: StudySession, now: Optional[datetime] = None) -> StudySession:
    _ensure_can_finish(session)
    session.status = "abandoned"
    session.end_time = now or utc_now()
    return session


def apply_session_update(
    session: StudySession,
    questions: Optional[List[QuestionRecord]] = None,
    status: Optional[str] = None,
    notes: Optional[str] = None,
    feedback: Optional[SessionFeedback] = None,
    now: Optional[datetime] = None,
) -> StudySession:
    now = now or utc_now()
    if status is not None and status != session.status:
        ensure_active(session)
    if questions is not None:
        ensure_active(session)
        session.questions = list(questions)
        session.total_questions = len(session.questions)
        session.correct_answers = count_correct(session.questions)
    if notes is not None:
        session.notes = notes
    if feedback is not None:
        session.feedback = feedback
    if status == "completed" and session.status == "active":
        complete_session(session, now=now)
    elif status == "abandoned" and session.status == "active":
        abandon_session(session, now=now)
    return recompute_score(session)


def submit_quiz(
    session: StudySession,
    answers: Sequence[QuizAnswer],
    time_spent: float = 0,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    _ensure_can_finish(session)
    now = now or utc_now()
    results = []
    records = []
    for index, answer in enumerate(answers):
        if index < len(session.questions):
            question = session.questions[index].question
        else:
            question = f"Question {index + 1}"
        is_correct = answer.selected_option == answer.correct_option
        results.append(
            {
                "question": question,
                "selectedOption": answer.selected_option,
                "correctOption": answer.correct_option,
                "isCorrect": is_correct,
                "timeSpent": answer.time_spent,
            }
        )
        records.append(
            QuestionRecord(
                question=question,
                answer=f"Option {answer.correct_option}",
                user_response=f"Option {answer.selected_option}",
                is_correct=is_correct,
                time_spent=answer.time_spent,
                timestamp=now,
            )
        )
    session.questions = records
    session.duration = round_half_up(time_spent, 60)
    complete_session(session, final_answers=answers, now=now)
    return {
        "score": session.score,
        "correctAnswers": session.correct_answers,
        "totalQuestions": session.total_questions,
        "timeSpent": time_spent,
        "questionResults": results,
    }


def apply_quiz_progress(account: Account, session: StudySession, answered: int, now: Optional[datetime] = None) -> Account:
    progress = account.study_progress.subject_progress.get(session.subject)
    if progress is not None:
        progress.questions += answered
        progress.score = round_half_up(progress.score + session.score, 2)
    return account_store.update_study_streak(account, now)


async def insert_session(db, session: StudySession) -> StudySession:
    await db.study_sessions.insert_one(session.to_document())
    logger.info(
        "study_session_started session_id=%s user_id=%s subject=%s",
        session.id,
        session.user_id,
        session.subject,
    )
    return session


async def get_session(db, user_id: str, session_id: str) -> StudySession:
    doc = await db.study_sessions.find_one({"id": session_id, "user_id": user_id}, {"_id": 0})
    if not doc:
        raise NotFoundError("Study session not found")
    return StudySession.model_validate(doc)


async def save_session(db, session: StudySession, now: Optional[datetime] = None) -> StudySession:
    recompute_score(session)
    expected_version = session.version
    session.version = expected_version + 1
    session.updated_at = now or utc_now()
    result = await db.study_sessions.replace_one(
        {"id": session.id, "version": expected_version},
        session.to_document(),
    )
    if result.matched_count != 1:
        session.version = expected_version
        raise ConcurrentUpdateError("Study session was modified by another request. Please retry.")
    return session


async def mutate_session(
    db,
    user_id: str,
    session_id: str,
    mutation: Callable[[StudySession], Any],
    now: Optional[datetime] = None,
) -> StudySession:
    """Apply ``mutation`` to a freshly loaded session, re-running it when another writer wins."""
    for attempt in range(1, account_store.MUTATION_ATTEMPTS + 1):
        session = await get_session(db, user_id, session_id)
        mutation(session)
        try:
            return await save_session(db, session, now)
        except ConcurrentUpdateError:
            logger.warning(
                "session_write_conflict session_id=%s attempt=%s/%s",
                session_id,
                attempt,
                account_store.MUTATION_ATTEMPTS,
            )
    raise ConcurrentUpdateError("Study session is busy. Please retry.")


async def add_question(
    db,
    session: StudySession,
    record: QuestionRecord,
    now: Optional[datetime] = None,
) -> Tuple[StudySession, Account]:
    """Count the question against the owner's quota, then log it on the session."""
    ensure_active(session)
    now = now or utc_now()
    account = await account_store.mutate_account(
        db,
        session.user_id,
        lambda acc: account_store.record_question(acc, session.subject, now),
        now,
    )
    session = await mutate_session(
        db,
        session.user_id,
        session.id,
        lambda current: append_question(current, record),
        now,
    )
    return session, account


async def list_sessions(
    db,
    user_id: str,
    page: int = 1,
    limit: int = 10,
    subject: Optional[str] = None,
    status: Optional[str] = None,
) -> Tuple[List[StudySession], int]:
    query: Dict[str, Any] = {"user_id": user_id}
    if subject:
        query["subject"] = subject
    if status:
        query["status"] = status
    total = await db.study_sessions.count_documents(query)
    docs = await db.study_sessions.find(
        query,
        {"_id": 0},
        sort=[("created_at", -1)],
        skip=(page - 1) * limit,
        limit=limit,
    ).to_list(limit)
    return [StudySession.model_validate(doc) for doc in docs], total


async def recent_sessions(db, user_id: str, limit: int = RECENT_SESSIONS_LIMIT) -> List[StudySession]:
    sessions, _ = await list_sessions(db, user_id, page=1, limit=limit)
    return sessions


def _accuracy(correct: int, questions: int) -> int:
    return score_percentage(correct, questions) if questions > 0 else 0


async def subject_stats(db, user_id: str) -> Dict[str, Dict[str, Any]]:
    """Lifetime per-subject aggregate for the progress page, zeroed for untouched subjects."""
    pipeline = [
        {"$match": {"user_id": user_id}},
        {
            "$group": {
                "_id": "$subject",
                "totalSessions": {"$sum": 1},
                "totalQuestions": {"$sum": "$total_questions"},
                "totalCorrect": {"$sum": "$correct_answers"},
                "averageScore": {"$avg": "$score"},
                "totalTime": {"$sum": "$duration"},
            }
        },
    ]
    rows = await db.study_sessions.aggregate(pipeline).to_list(len(SUBJECTS))
    by_subject = {row["_id"]: row for row in rows}
    stats = {}
    for subject in SUBJECTS:
        row = by_subject.get(subject, {})
        stats[subject] = {
            "totalSessions": row.get("totalSessions", 0),
            "totalQuestions": row.get("totalQuestions", 0),
            "totalCorrect": row.get("totalCorrect", 0),
            "averageScore": round_half_up(row.get("averageScore") or 0, 1),
            "totalTime": row.get("totalTime", 0),
        }
    return stats


async def study_stats(db, user_id: str, timeframe_days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Totals over sessions created in the window; averages are answer accuracy."""
    now = now or utc_now()
    since = now - timedelta(days=timeframe_days)
    query = {"user_id": user_id, "created_at": {"$gte": since.isoformat()}}
    docs = await db.study_sessions.find(
        query,
        {"_id": 0, "subject": 1, "status": 1, "duration": 1, "total_questions": 1, "correct_answers": 1},
    ).to_list(None)

    total_questions = sum(doc.get("total_questions", 0) for doc in docs)
    total_correct = sum(doc.get("correct_answers", 0) for doc in docs)
    breakdown = {}
    for subject in SUBJECTS:
        subject_docs = [doc for doc in docs if doc.get("subject") == subject]
        questions = sum(doc.get("total_questions", 0) for doc in subject_docs)
        correct = sum(doc.get("correct_answers", 0) for doc in subject_docs)
        breakdown[subject] = {
            "sessions": len(subject_docs),
            "questions": questions,
            "correct": correct,
            "averageScore": _accuracy(correct, questions),
        }
    return {
        "totalSessions": len(docs),
        "completedSessions": sum(1 for doc in docs if doc.get("status") == "completed"),
        "totalQuestions": total_questions,
        "totalCorrect": total_correct,
        "averageScore": _accuracy(total_correct, total_questions),
        "totalStudyTime": sum(doc.get("duration") or 0 for doc in docs),
        "subjectBreakdown": breakdown,
    }



async def reap_stale_sessions(
    db,
    max_age_hours: int = SESSION_ABANDON_AFTER_HOURS,
    now: Optional[datetime] = None,
) -> int:
    now = now or utc_now()
    cutoff = now - timedelta(hours=max_age_hours)
    result = await db.study_sessions.update_many(
        {"status": "active", "start_time": {"$lt": cutoff.isoformat()}},
        {
            "$set": {"status": "abandoned", "end_time": now.isoformat(), "updated_at": now.isoformat()},
            "$inc": {"version": 1},
        },
    )
    if result.modified_count:
        logger.info("stale_sessions_reaped count=%s cutoff=%s", result.modified_count, cutoff.isoformat())
    return result.modified_count
