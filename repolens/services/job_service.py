"""Job lookups and lifecycle actions outside the pipeline.

Reads, soft deletion, share links and sandbox deletion. Creating and
retrying jobs belongs to the Orchestrator because both start background
work.
"""

import asyncio
import logging
from typing import List, Optional

from ..exceptions import SandboxError, SandboxNotPausedError, SandboxUnavailableError
from ..gateways.base import SandboxGateway
from ..models.analysis_job import JobStatus
from ..pipeline.event_bus import EventBus
from ..pipeline.idle_reclaimer import IdleReclaimer
from ..repositories.job_store import JobStore
from ..schemas.job import JobRecord

logger = logging.getLogger(__name__)


class JobService:
    """
    Non-pipeline operations on analysis jobs.

    All store calls are blocking and run on a worker thread so the event
    loop keeps serving streams while the database is busy.
    """

    def __init__(
        self,
        store: JobStore,
        bus: EventBus,
        sandbox: SandboxGateway,
        reclaimer: Optional[IdleReclaimer] = None,
    ):
        self.store = store
        self.bus = bus
        self.sandbox = sandbox
        self.reclaimer = reclaimer

    async def get(self, job_id: str) -> JobRecord:
        return await asyncio.to_thread(self.store.get, job_id)

    async def list_recent(self, limit: int = 20, repo_url: Optional[str] = None) -> List[JobRecord]:
        return await asyncio.to_thread(self.store.list_recent, limit, repo_url)

    async def delete(self, job_id: str) -> None:
        """Soft delete a job and drop its buffered events."""
        await asyncio.to_thread(self.store.soft_delete, job_id)
        if self.reclaimer is not None:
            self.reclaimer.cancel(job_id)
        self.bus.clear(job_id)
        logger.info("Soft deleted job %s", job_id)

    async def delete_sandbox(self, job_id: str) -> JobRecord:
        """
        Destroy a job's sandbox.

        Only allowed while the sandbox is paused, so a running pipeline or
        an active chat never loses its workspace.

        Raises:
            SandboxNotPausedError: sandbox is in use.
            SandboxUnavailableError: the provider refused the deletion.
        """
        job = await asyncio.to_thread(self.store.get, job_id)
        if not job.sandbox_paused or not job.sandbox_name:
            raise SandboxNotPausedError(job_id, "delete the sandbox")

        try:
            await self.sandbox.delete(job.sandbox_name)
        except SandboxError as e:
            raise SandboxUnavailableError(f"Sandbox deletion failed: {e}") from e

        if self.reclaimer is not None:
            self.reclaimer.cancel(job_id)
        record = await asyncio.to_thread(
            self.store.update_job, job_id, status=JobStatus.DESTROYED, sandbox_paused=False
        )
        logger.info("Deleted sandbox %s for job %s", job.sandbox_name, job_id)
        return record

    async def share(self, job_id: str) -> JobRecord:
        return await asyncio.to_thread(self.store.publish, job_id)

    async def unshare(self, job_id: str) -> JobRecord:
        return await asyncio.to_thread(self.store.unpublish, job_id)

    async def get_shared(self, token: str) -> JobRecord:
        return await asyncio.to_thread(self.store.get_shared, token)
