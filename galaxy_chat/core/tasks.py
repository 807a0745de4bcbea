"""Fire-and-forget task helpers."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Coroutine

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage collected mid-flight.
_BACKGROUND_TASKS: set[asyncio.Task[Any]] = set()


def _on_done(task: asyncio.Task[Any]) -> None:
    _BACKGROUND_TASKS.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task %s failed",
            task.get_name(),
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def run_in_background(coro: Coroutine[Any, Any, Any], *, label: str) -> asyncio.Task[Any]:
    """Schedule a coroutine without awaiting it; failures are logged, never raised."""
    task = asyncio.create_task(coro, name=label)
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_on_done)
    return task


async def wait_for_background_tasks(timeout: float | None = None) -> None:
    """Wait for pending background tasks of the running loop (shutdown and tests)."""
    loop = asyncio.get_running_loop()
    while pending := [t for t in _BACKGROUND_TASKS if t.get_loop() is loop]:
        _done, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning("%d background tasks still running", len(still_pending))
            return
