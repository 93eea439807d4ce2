"""Job pipeline state machine.

``run_pipeline`` drives one job through clone -> analysis -> diagram ->
ownership -> export. ``request_retry`` re-runs a single failed
supplementary stage after the pipeline has finished.

Failure policy:

- clone (including sandbox acquisition) and analysis are essential. A
  failure marks the job ``failed`` and stops; later stages stay pending.
- diagram, ownership and export are supplementary. A failure is recorded
  on that stage only. Stages whose direct dependency did not complete are
  marked ``skipped`` with a reason. The job still ends ``completed`` with a
  derived ``partial_status``.

Every stage entry point ends in ``completed`` or ``failed`` for that stage,
whatever the operation raised. The sandbox is paused on every exit path.

Persistence goes through ``JobStore`` (via ``asyncio.to_thread``) and is
the source of truth; the EventBus only announces what was persisted.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

from ..core.logging_config import job_id_var
from ..exceptions import (
    InvalidRepositoryUrlError,
    RepositoryMaterializationError,
    StageNotRetryableError,
)
from ..gateways.base import AgentActivity, AgentGateway, OwnershipResolver, SandboxGateway, SandboxHandle
from ..models.analysis_job import JobStatus
from ..repositories.job_store import JobStore
from ..schemas.events import (
    CompleteEvent,
    ErrorEvent,
    ProgressEvent,
    StageCompleteEvent,
    StageFailedEvent,
    StageProgressEvent,
    StageSkippedEvent,
    StageStartEvent,
    StatusEvent,
    SubProgress,
    ThinkingEvent,
    ToolUseEvent,
)
from ..schemas.job import JobRecord
from ..services.export_service import ArtifactExporter
from .event_bus import EventBus
from .idle_reclaimer import IdleReclaimer
from .stages import (
    RETRYABLE_STAGES,
    PartialStatus,
    StageName,
    StageRecord,
    StageStatus,
    blocking_dependency,
    derive_partial_status,
)
from .task_runner import TaskRunner

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_THINKING_CHARS = 500


def describe_error(exc: BaseException) -> str:
    """Short, client-safe text for a stage failure."""
    text = str(exc).strip()
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) and not text:
        text = "Operation timed out"
    return text or type(exc).__name__


class JobReporter:
    """Publishes one job's lifecycle events."""

    def __init__(self, bus: EventBus, job_id: str):
        self.bus = bus
        self.job_id = job_id

    def status(self, status: JobStatus, message: str) -> None:
        self.bus.publish(self.job_id, StatusEvent(status=status.value, message=message))

    def progress(self, message: str, progress: Optional[float] = None) -> None:
        self.bus.publish(self.job_id, ProgressEvent(message=message, progress=progress))

    def activity(self, item: AgentActivity) -> None:
        if item.kind == "thinking":
            self.bus.publish(self.job_id, ThinkingEvent(message=item.message[:MAX_THINKING_CHARS]))
        elif item.kind == "tool_use":
            self.bus.publish(self.job_id, ToolUseEvent(message=f"Using {item.message}", tool=item.message))
        else:
            self.progress(item.message)

    def stage_start(self, stage: StageName) -> None:
        self.bus.publish(self.job_id, StageStartEvent(stage=stage, message=f"Starting {stage.value}"))

    def stage_complete(self, stage: StageName, record: StageRecord) -> None:
        self.bus.publish(self.job_id, StageCompleteEvent(
            stage=stage, duration_ms=record.duration_ms, message=f"{stage.value} completed",
        ))

    def stage_failed(self, stage: StageName, record: StageRecord) -> None:
        self.bus.publish(self.job_id, StageFailedEvent(
            stage=stage,
            error=record.error or "unknown error",
            duration_ms=record.duration_ms,
            message=f"{stage.value} failed: {record.error}",
        ))

    def stage_skipped(self, stage: StageName, reason: str) -> None:
        self.bus.publish(self.job_id, StageSkippedEvent(
            stage=stage, skip_reason=reason, message=f"{stage.value} skipped: {reason}",
        ))

    def stage_progress(self, stage: StageName, current: int, total: int, unit: str) -> None:
        self.bus.publish(self.job_id, StageProgressEvent(
            stage=stage,
            sub_progress=SubProgress(current=current, total=total, unit=unit),
            message=f"{stage.value}: {current}/{total} {unit}",
        ))

    def complete(self, partial_status: PartialStatus, message: str) -> None:
        self.bus.publish(self.job_id, CompleteEvent(message=message, partial_status=partial_status.value))

    def error(self, error: str) -> None:
        self.bus.publish(self.job_id, ErrorEvent(message=f"Analysis failed: {error}", error=error))


@dataclass
class _RunContext:
    job_id: str
    repo_url: str
    sandbox_name: str
    reporter: JobReporter
    handle: Optional[SandboxHandle] = None


class Orchestrator:
    """Creates jobs, runs pipelines and scoped retries in the background."""

    def __init__(
        self,
        store: JobStore,
        bus: EventBus,
        sandbox: SandboxGateway,
        agent: AgentGateway,
        ownership: OwnershipResolver,
        exporter: ArtifactExporter,
        runner: TaskRunner,
        allowed_repo_prefixes: Tuple[str, ...] = ("https://github.com/",),
        reclaimer: Optional[IdleReclaimer] = None,
    ):
        self.store = store
        self.bus = bus
        self.sandbox = sandbox
        self.agent = agent
        self.ownership = ownership
        self.exporter = exporter
        self.runner = runner
        self.allowed_repo_prefixes = tuple(allowed_repo_prefixes)
        self.reclaimer = reclaimer

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def submit_job(self, repo_url: str, content_style: str = "overview") -> JobRecord:
        """Validate, persist a queued job and start its pipeline in the background."""
        if not repo_url.startswith(self.allowed_repo_prefixes):
            raise InvalidRepositoryUrlError(repo_url, list(self.allowed_repo_prefixes))

        job = await asyncio.to_thread(self.store.create_job, repo_url, content_style)
        self.runner.submit(self.run_pipeline(job.id, repo_url), name=f"pipeline-{job.id[:8]}")
        return job

    async def request_retry(self, job_id: str, stage_name: str) -> StageName:
        """Claim a failed supplementary stage and re-run it in the background.

        Raises:
            StageNotRetryableError: unknown stage, or clone/analysis.
            JobNotFoundError: no such job.
            JobNotReadyError: the pipeline has not completed.
            SandboxBusyError: another stage is running in the sandbox.
            StagePreconditionError: the stage is not currently failed.
        """
        retryable = sorted(s.value for s in RETRYABLE_STAGES)
        try:
            stage = StageName(stage_name)
        except ValueError:
            raise StageNotRetryableError(stage_name, retryable) from None
        if stage not in RETRYABLE_STAGES:
            raise StageNotRetryableError(stage_name, retryable)

        job = await asyncio.to_thread(self.store.get, job_id)
        await asyncio.to_thread(self.store.claim_retry, job_id, stage)
        # A chat idle countdown must not pause the sandbox under the retry.
        if self.reclaimer is not None and self.reclaimer.cancel(job_id):
            logger.info("Idle timer for job %s cancelled by retry", job_id)

        reporter = JobReporter(self.bus, job_id)
        reporter.stage_start(stage)
        logger.info("Retry of %s accepted for job %s", stage.value, job_id)
        self.runner.submit(self._run_retry(job, stage, reporter), name=f"retry-{stage.value}-{job_id[:8]}")
        return stage

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run_pipeline(self, job_id: str, repo_url: str) -> None:
        token = job_id_var.set(job_id)
        reporter = JobReporter(self.bus, job_id)
        ctx: Optional[_RunContext] = None
        try:
            job = await asyncio.to_thread(self.store.get, job_id, True)
            ctx = _RunContext(
                job_id=job_id,
                repo_url=repo_url,
                sandbox_name=job.sandbox_name or f"analysis-{job_id[:8]}",
                reporter=reporter,
            )
            await self._drive(ctx)
        except Exception as e:
            # Anything that escaped a stage boundary (store outage, bug).
            logger.exception("Pipeline crashed for job %s", job_id)
            await self._fail_open_stages(job_id, reporter)
            await self._fail_job(job_id, reporter, f"Internal error: {describe_error(e)}")
        finally:
            if ctx is not None:
                await self._release(ctx)
            job_id_var.reset(token)

    async def _drive(self, ctx: _RunContext) -> None:
        reporter = ctx.reporter
        logger.info("Pipeline started for %s", ctx.repo_url)

        await self._set_status(ctx, JobStatus.CLONING, "Cloning repository")
        if not await self._execute_stage(ctx, StageName.CLONE, lambda: self._clone(ctx)):
            await self._fail_job(ctx.job_id, reporter, await self._stage_error(ctx.job_id, StageName.CLONE))
            return

        await self._set_status(ctx, JobStatus.ANALYZING, "Analyzing repository")
        if not await self._execute_stage(ctx, StageName.ANALYSIS, lambda: self._analyze(ctx)):
            await self._fail_job(ctx.job_id, reporter, await self._stage_error(ctx.job_id, StageName.ANALYSIS))
            return

        await self._set_status(ctx, JobStatus.GENERATING, "Generating diagrams, ownership and exports")
        for stage in (StageName.DIAGRAM, StageName.OWNERSHIP, StageName.EXPORT):
            await self._run_supplementary(ctx, stage)

        # Pause before the job is visible as completed, so a retry never
        # finds the pipeline still holding the sandbox.
        await self._release(ctx)
        job = await asyncio.to_thread(self.store.get, ctx.job_id, True)
        partial = derive_partial_status(job.stages)
        await asyncio.to_thread(self.store.finalize, ctx.job_id, JobStatus.COMPLETED, partial)
        reporter.status(JobStatus.COMPLETED, "Analysis complete")
        reporter.complete(partial, f"Analysis complete ({partial.value})")
        logger.info("Pipeline finished with partial_status=%s", partial.value)

    async def _run_supplementary(self, ctx: _RunContext, stage: StageName) -> None:
        job = await asyncio.to_thread(self.store.get, ctx.job_id, True)
        blocker = blocking_dependency(stage, job.stages)
        if blocker is not None:
            reason = f"dependency '{blocker.value}' {job.stages[blocker].status.value}"
            await asyncio.to_thread(
                self.store.update_stage, ctx.job_id, stage, StageStatus.SKIPPED, skip_reason=reason
            )
            ctx.reporter.stage_skipped(stage, reason)
            logger.info("Stage %s skipped: %s", stage.value, reason)
            return
        await self._execute_stage(ctx, stage, self._operation_for(ctx, stage))

    async def _execute_stage(
        self,
        ctx: _RunContext,
        stage: StageName,
        operation: Callable[[], Awaitable[Any]],
        already_started: bool = False,
    ) -> bool:
        """Run *operation* as *stage*. Returns True when the stage completed."""
        if not already_started:
            await asyncio.to_thread(self.store.update_stage, ctx.job_id, stage, StageStatus.IN_PROGRESS)
            ctx.reporter.stage_start(stage)

        try:
            await operation()
        except asyncio.CancelledError:
            await self._record_failure(ctx, stage, "Cancelled")
            raise
        except Exception as e:
            logger.warning(
                "Stage %s failed: %s", stage.value, describe_error(e),
                extra={"stage": stage.value, "error_type": type(e).__name__},
            )
            await self._record_failure(ctx, stage, describe_error(e))
            return False

        record = await asyncio.to_thread(self.store.update_stage, ctx.job_id, stage, StageStatus.COMPLETED)
        ctx.reporter.stage_complete(stage, record)
        logger.info("Stage %s completed in %sms", stage.value, record.duration_ms, extra={"stage": stage.value})
        return True

    async def _record_failure(self, ctx: _RunContext, stage: StageName, error: str) -> None:
        record = await asyncio.to_thread(
            self.store.update_stage, ctx.job_id, stage, StageStatus.FAILED, error=error
        )
        ctx.reporter.stage_failed(stage, record)

    # ------------------------------------------------------------------
    # Stage operations
    # ------------------------------------------------------------------

    def _operation_for(self, ctx: _RunContext, stage: StageName) -> Callable[[], Awaitable[Any]]:
        return {
            StageName.DIAGRAM: lambda: self._diagram(ctx),
            StageName.OWNERSHIP: lambda: self._ownership(ctx),
            StageName.EXPORT: lambda: self._export(ctx),
        }[stage]

    async def _clone(self, ctx: _RunContext) -> None:
        ctx.handle = await self.sandbox.acquire(ctx.sandbox_name)
        await self._materialize(ctx)

    async def _materialize(self, ctx: _RunContext) -> None:
        reason = await self.sandbox.ensure_repo_present(ctx.handle, ctx.repo_url)
        if reason is not None:
            raise RepositoryMaterializationError(f"Failed to clone repository: {reason}")

    async def _analyze(self, ctx: _RunContext) -> None:
        result = await self.agent.analyze(ctx.handle, ctx.job_id, ctx.reporter.activity)
        context = dict(result.context)
        if result.highlevel:
            context.setdefault("highlevel", result.highlevel)
        if result.technical:
            context.setdefault("technical", result.technical)
        await asyncio.to_thread(
            self.store.update_job,
            ctx.job_id,
            markdown_content=result.markdown,
            analysis_context=context or None,
        )

    async def _diagram(self, ctx: _RunContext) -> None:
        result = await self.agent.diagram(ctx.handle, ctx.job_id, ctx.reporter.activity)
        job = await asyncio.to_thread(self.store.get, ctx.job_id, True)
        context = dict(job.analysis_context or {})
        if result.patterns:
            context["patterns"] = result.patterns
        await asyncio.to_thread(
            self.store.update_job,
            ctx.job_id,
            react_flow_data=result.react_flow_data,
            analysis_context=context or None,
        )

    async def _ownership(self, ctx: _RunContext) -> None:
        job = await asyncio.to_thread(self.store.get, ctx.job_id, True)
        nodes = ((job.react_flow_data or {}).get("architecture") or {}).get("nodes") or []

        def on_progress(current: int, total: int, unit: str) -> None:
            ctx.reporter.stage_progress(StageName.OWNERSHIP, current, total, unit)

        data = await self.ownership.resolve(ctx.repo_url, nodes, on_progress)
        if data.is_empty:
            ctx.reporter.progress("No human contributors found")
        await asyncio.to_thread(
            self.store.update_job, ctx.job_id, ownership_data=data.model_dump(mode="json")
        )

    async def _export(self, ctx: _RunContext) -> None:
        job = await asyncio.to_thread(self.store.get, ctx.job_id, True)
        paths = await self.exporter.export(
            ctx.job_id,
            markdown=job.markdown_content,
            react_flow_data=job.react_flow_data,
            analysis_context=job.analysis_context,
            ownership_data=job.ownership_data,
        )
        await asyncio.to_thread(self.store.update_job, ctx.job_id, export_paths=paths)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def _run_retry(self, job: JobRecord, stage: StageName, reporter: JobReporter) -> None:
        token = job_id_var.set(job.id)
        ctx = _RunContext(
            job_id=job.id,
            repo_url=job.repo_url,
            sandbox_name=job.sandbox_name or f"analysis-{job.id[:8]}",
            reporter=reporter,
        )
        try:
            try:
                ctx.handle = await self.sandbox.resume(ctx.sandbox_name)
                await asyncio.to_thread(self.store.set_sandbox_paused, job.id, False)
                await self._materialize(ctx)
            except Exception as e:
                logger.warning("Retry of %s could not prepare sandbox: %s", stage.value, describe_error(e))
                await self._record_failure(ctx, stage, describe_error(e))
                return

            if await self._execute_stage(ctx, stage, self._operation_for(ctx, stage), already_started=True):
                updated = await asyncio.to_thread(self.store.settle_after_retry, job.id)
                partial = PartialStatus(updated.partial_status) if updated.partial_status else derive_partial_status(updated.stages)
                reporter.complete(partial, f"Retry of {stage.value} completed")
        except Exception:
            logger.exception("Retry of %s crashed for job %s", stage.value, job.id)
            await self._fail_stuck_stage(ctx, stage)
        finally:
            await self._release(ctx)
            self.store.discard_lock(job.id)
            job_id_var.reset(token)

    async def _fail_stuck_stage(self, ctx: _RunContext, stage: StageName) -> None:
        try:
            job = await asyncio.to_thread(self.store.get, ctx.job_id, True)
            if job.stages[stage].status == StageStatus.IN_PROGRESS:
                await self._record_failure(ctx, stage, "Internal error during retry")
        except Exception:
            logger.exception("Could not mark stage %s failed for job %s", stage.value, ctx.job_id)

    async def _fail_open_stages(self, job_id: str, reporter: JobReporter) -> None:
        """Close any stage left in_progress by a crash."""
        try:
            job = await asyncio.to_thread(self.store.get, job_id, True)
            for stage, record in job.stages.items():
                if record.status == StageStatus.IN_PROGRESS:
                    failed = await asyncio.to_thread(
                        self.store.update_stage, job_id, stage, StageStatus.FAILED, error="Internal error"
                    )
                    reporter.stage_failed(stage, failed)
        except Exception:
            logger.exception("Could not close open stages for job %s", job_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _set_status(self, ctx: _RunContext, status: JobStatus, message: str) -> None:
        await asyncio.to_thread(self.store.update_job, ctx.job_id, status=status)
        ctx.reporter.status(status, message)

    async def _stage_error(self, job_id: str, stage: StageName) -> str:
        job = await asyncio.to_thread(self.store.get, job_id, True)
        return job.stages[stage].error or f"{stage.value} failed"

    async def _fail_job(self, job_id: str, reporter: JobReporter, message: str) -> None:
        try:
            await asyncio.to_thread(
                self.store.finalize, job_id, JobStatus.FAILED, PartialStatus.FAILED, message
            )
        except Exception:
            logger.exception("Could not persist failure for job %s", job_id)
        reporter.status(JobStatus.FAILED, message)
        reporter.error(message)
        logger.error("Job failed: %s", message)

    async def _release(self, ctx: _RunContext) -> None:
        """Pause the sandbox and record it. Runs on every exit path."""
        if ctx.handle is None:
            return
        try:
            await self.sandbox.pause(ctx.handle)
        except Exception:
            logger.exception("Sandbox pause raised for %s", ctx.sandbox_name)
        ctx.handle = None
        try:
            await asyncio.to_thread(self.store.set_sandbox_paused, ctx.job_id, True)
        except Exception:
            logger.exception("Could not record paused sandbox for job %s", ctx.job_id)
