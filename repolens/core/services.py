"""Application service container.

Built once in the app lifespan and stored on ``app.state.services``. Routes
reach it through ``api.dependencies.get_services``; tests build one with
fake gateways.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..gateways.agent import HttpAgentGateway
from ..gateways.base import AgentGateway, OwnershipResolver, SandboxGateway, SandboxHandle
from ..gateways.ownership import GitHubOwnershipResolver
from ..gateways.sandbox import HttpSandboxGateway
from ..pipeline.event_bus import EventBus
from ..pipeline.idle_reclaimer import IdleReclaimer
from ..pipeline.orchestrator import Orchestrator
from ..pipeline.stages import StageStatus
from ..pipeline.task_runner import TaskRunner
from ..repositories.job_store import JobStore
from ..services.chat_service import ChatService
from ..services.explore_service import ExploreService
from ..services.export_service import ArtifactExporter
from ..services.job_service import JobService
from .config import Settings

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: JobStore
    bus: EventBus
    runner: TaskRunner
    reclaimer: IdleReclaimer
    sandbox: SandboxGateway
    agent: AgentGateway
    orchestrator: Orchestrator
    jobs: JobService
    chat: ChatService
    explore: ExploreService

    async def shutdown(self) -> None:
        await self.runner.shutdown()
        await self.reclaimer.shutdown()
        aclose = getattr(self.sandbox, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("Services shut down")


def build_services(
    settings: Settings,
    session_factory: Callable[[], Session],
    sandbox: Optional[SandboxGateway] = None,
    agent: Optional[AgentGateway] = None,
    ownership: Optional[OwnershipResolver] = None,
) -> Services:
    """Wire stores, gateways and services. Gateways default to the HTTP implementations."""
    store = JobStore(session_factory)
    bus = EventBus(
        buffer_size=settings.event_buffer_size,
        retention_seconds=settings.event_retention_seconds,
    )
    runner = TaskRunner()
    sandbox = sandbox or HttpSandboxGateway(settings)
    agent = agent or HttpAgentGateway(settings)
    ownership = ownership or GitHubOwnershipResolver(settings)

    async def on_idle(job_id: str) -> None:
        job = await asyncio.to_thread(store.get, job_id, True)
        running = [s.value for s, r in job.stages.items() if r.status == StageStatus.IN_PROGRESS]
        if running:
            # The stage run pauses the sandbox itself when it finishes.
            logger.info("Job %s idle but stage %s is running; sandbox left active", job_id, running[0])
            return
        if job.sandbox_name:
            await sandbox.pause(SandboxHandle(name=job.sandbox_name))
        await asyncio.to_thread(store.set_sandbox_paused, job_id, True)

    reclaimer = IdleReclaimer(settings.idle_timeout_seconds, on_idle)
    orchestrator = Orchestrator(
        store=store,
        bus=bus,
        sandbox=sandbox,
        agent=agent,
        ownership=ownership,
        exporter=ArtifactExporter(settings.export_dir),
        runner=runner,
        allowed_repo_prefixes=tuple(settings.get_repo_prefixes()),
        reclaimer=reclaimer,
    )
    return Services(
        settings=settings,
        store=store,
        bus=bus,
        runner=runner,
        reclaimer=reclaimer,
        sandbox=sandbox,
        agent=agent,
        orchestrator=orchestrator,
        jobs=JobService(store, bus, sandbox, reclaimer),
        chat=ChatService(store, sandbox, agent, reclaimer),
        explore=ExploreService(store, sandbox, settings.repo_path),
    )
