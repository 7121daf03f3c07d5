# tasks/background.py
# ============================================================================
# APPRAISAL FULFILLMENT - BACKGROUND TASK REGISTRY
# ============================================================================
# Work that outlives the HTTP response (media pipeline, error reports) is
# spawned here so shutdown can wait for it instead of dropping it.
# ============================================================================

import asyncio
from typing import Any, Coroutine, Optional

import structlog


class BackgroundTaskRegistry:
    """Tracks spawned tasks until they finish."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self._logger = structlog.get_logger().bind(component="background_tasks")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            self._logger.warning("background_task_cancelled", task=task.get_name())
            return
        error = task.exception()
        if error is not None:
            self._logger.error(
                "background_task_failed",
                task=task.get_name(),
                error=str(error),
                error_type=type(error).__name__,
            )

    async def drain(self, timeout: Optional[float] = None) -> int:
        """
        Wait for every tracked task, including ones spawned while draining.

        Returns how many tasks were still running when the timeout expired;
        those are cancelled.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while self._tasks:
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            done, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending and deadline is not None and loop.time() >= deadline:
                for task in pending:
                    task.cancel()
                self._logger.warning("background_drain_timeout", cancelled=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
                return len(pending)

        self._logger.info("background_drained")
        return 0
