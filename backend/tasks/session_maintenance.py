import logging
from typing import Any, Dict, Optional

import study_sessions
from task_queue import celery_app
from tasks._async_runner import run_async
from server import db

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="tasks.session_maintenance.reap_stale_sessions")
def reap_stale_sessions(self, max_age_hours: Optional[int] = None) -> Dict[str, Any]:
    return run_async(_reap_stale_sessions_impl(max_age_hours))


async def _reap_stale_sessions_impl(max_age_hours: Optional[int] = None) -> Dict[str, Any]:
    max_age = max_age_hours or study_sessions.SESSION_ABANDON_AFTER_HOURS
    reaped = await study_sessions.reap_stale_sessions(db, max_age_hours=max_age)
    logger.info("session_reaper_completed reaped=%s max_age_hours=%s", reaped, max_age)
    return {"reaped": reaped, "max_age_hours": max_age}
