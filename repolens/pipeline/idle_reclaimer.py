"""Debounced idle timer per job.

After each interactive call (chat), ``touch(job_id)`` restarts a countdown.
When it elapses without another touch, the job's sandbox is marked paused
and the sandbox is asked to pause. There is never more than one timer per
job: starting a new one always cancels the old one first.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

IdleCallback = Callable[[str], Awaitable[None]]


class IdleReclaimer:
    def __init__(self, timeout_seconds: float, on_idle: IdleCallback):
        self.timeout_seconds = timeout_seconds
        self._on_idle = on_idle
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._running: Dict[str, asyncio.Task] = {}

    def touch(self, job_id: str) -> None:
        """(Re)start the countdown for *job_id*. Must be called on the event loop."""
        self.cancel(job_id)
        loop = asyncio.get_running_loop()
        self._timers[job_id] = loop.call_later(self.timeout_seconds, self._fire, job_id)
        logger.debug("Idle timer started for job %s (%ss)", job_id, self.timeout_seconds)

    def cancel(self, job_id: str) -> bool:
        """Stop a pending countdown. Returns True if one was pending."""
        handle = self._timers.pop(job_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_pending(self, job_id: str) -> bool:
        return job_id in self._timers

    def _fire(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        task = asyncio.get_running_loop().create_task(self._reclaim(job_id), name=f"idle-{job_id[:8]}")
        self._running[job_id] = task
        task.add_done_callback(lambda _t: self._running.pop(job_id, None))

    async def _reclaim(self, job_id: str) -> None:
        logger.info("Idle timer elapsed for job %s", job_id)
        try:
            await self._on_idle(job_id)
        except Exception:
            logger.exception("Idle reclamation failed for job %s", job_id)

    async def shutdown(self) -> None:
        for job_id in list(self._timers):
            self.cancel(job_id)
        running = [t for t in self._running.values() if not t.done()]
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    def pending_task(self, job_id: str) -> Optional[asyncio.Task]:
        return self._running.get(job_id)
