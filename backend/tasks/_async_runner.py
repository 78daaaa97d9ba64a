import asyncio
from typing import Any, Optional

_TASK_LOOP: Optional[asyncio.AbstractEventLoop] = None


def _task_loop() -> asyncio.AbstractEventLoop:
    global _TASK_LOOP
    if _TASK_LOOP is None or _TASK_LOOP.is_closed():
        _TASK_LOOP = asyncio.new_event_loop()
        asyncio.set_event_loop(_TASK_LOOP)
    return _TASK_LOOP


def run_async(coro: Any) -> Any:
    """Drive a store coroutine from a synchronous Celery task.

    One loop is kept per worker process; the Motor client in ``server`` binds
    to the first loop it runs on, so a fresh ``asyncio.run()`` per task would
    leave it pointing at a closed loop.
    """
    return _task_loop().run_until_complete(coro)
