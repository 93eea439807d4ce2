"""Background task supervisor for accept-now, run-later work.

Request handlers submit the pipeline or a retry and return immediately.
The runner keeps a strong reference to every task until it finishes (the
event loop only holds weak ones), logs crashes that escaped the task's own
error handling, and cancels whatever is left on shutdown.
"""

import asyncio
import logging
from typing import Coroutine, Set

logger = logging.getLogger(__name__)


class TaskRunner:
    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, coro: Coroutine, name: str) -> asyncio.Task:
        """Schedule *coro* on the running loop without awaiting it."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("Task %s submitted (%d running)", name, len(self._tasks))
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("Task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s crashed: %s", task.get_name(), exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every submitted task, including ones they submit, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d background tasks on shutdown", len(tasks))
