"""
Background processing for acknowledged webhook events.

The HTTP handler answers the sender before the event is processed; the
runner owns the resulting tasks so they are not garbage-collected mid-flight,
logs their failures, and drains them on shutdown.
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

from trunkline.shared.logging import get_logger

logger = get_logger(__name__)


class WebhookTaskRunner:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Webhook task failed",
                exc_info=exc,
                extra={"event": "telephony_webhook_task_failed", "task": task.get_name()},
            )

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight tasks; cancel whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info("Draining webhook tasks", extra={"count": len(pending)})
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
            logger.warning("Webhook tasks cancelled on shutdown", extra={"count": len(not_done)})
