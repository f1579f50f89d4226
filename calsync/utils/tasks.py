"""Fire-and-forget tasks started from request handlers."""

import asyncio
import logging
from typing import Any, Coroutine

from calsync.errors import SyncError

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage collected mid-run
_pending_tasks: set[asyncio.Task] = set()


def create_background_task(coro: Coroutine[Any, Any, Any], task_name: str) -> asyncio.Task:
    """
    Run ``coro`` detached from the current request.

    Failures never propagate: sync failures are logged with their reason,
    anything else with a traceback.
    """
    async def _run():
        try:
            await coro
        except SyncError as e:
            logger.warning(f"Background task '{task_name}' failed: {e.reason} ({e})")
        except Exception:
            logger.exception(f"Unexpected error in background task '{task_name}'")

    task = asyncio.create_task(_run(), name=task_name)
    _pending_tasks.add(task)
    task.add_done_callback(_pending_tasks.discard)
    return task


def pending_task_names() -> list[str]:
    return sorted(task.get_name() for task in _pending_tasks)
