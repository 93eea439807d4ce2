"""Tests for the pipeline orchestrator: stage outcomes, events and scoped retries."""

import asyncio

import pytest

from repolens.exceptions import (
    AgentError,
    AgentErrorCode,
    InvalidRepositoryUrlError,
    JobNotReadyError,
    SandboxError,
    StageNotRetryableError,
    StagePreconditionError,
)
from repolens.models.analysis_job import JobStatus
from repolens.pipeline.event_bus import EventBus
from repolens.pipeline.idle_reclaimer import IdleReclaimer
from repolens.pipeline.orchestrator import Orchestrator
from repolens.pipeline.stages import PartialStatus, StageName, StageStatus
from repolens.pipeline.task_runner import TaskRunner
from repolens.services.export_service import ArtifactExporter

from fakes import REPO_URL, make_job


@pytest.fixture()
def orchestrator(store, bus, sandbox, agent, ownership, tmp_path):
    return Orchestrator(
        store=store,
        bus=bus,
        sandbox=sandbox,
        agent=agent,
        ownership=ownership,
        exporter=ArtifactExporter(str(tmp_path / "exports")),
        runner=TaskRunner(),
    )


async def _run(orchestrator: Orchestrator, bus: EventBus):
    """Create a job, record its events and run the pipeline to the end."""
    job = orchestrator.store.create_job(REPO_URL)
    events = []
    bus.subscribe(job.id, events.append)
    await orchestrator.run_pipeline(job.id, REPO_URL)
    return orchestrator.store.get(job.id), events


def _stage_events(events, stage: StageName):
    return [e.type for e in events if getattr(e, "stage", None) == stage]


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_all_stages_complete(self, orchestrator, bus, sandbox):
        job, events = await _run(orchestrator, bus)

        assert job.status == JobStatus.COMPLETED.value
        assert job.partial_status == PartialStatus.COMPLETE.value
        assert all(r.status == StageStatus.COMPLETED for r in job.stages.values())
        assert all(r.duration_ms is not None for r in job.stages.values())
        assert job.completed_at is not None
        assert events[-1].type == "complete"
        assert events[-1].partial_status == "complete"

    @pytest.mark.asyncio
    async def test_artifacts_are_persisted(self, orchestrator, bus):
        job, _ = await _run(orchestrator, bus)

        assert job.markdown_content.startswith("# Widgets")
        assert job.analysis_context["patterns"] == {"style": "layered"}
        assert job.analysis_context["languages"] == ["python"]
        assert job.react_flow_data["architecture"]["nodes"][0]["id"] == "api"
        assert job.ownership_data["global_owners"][0]["name"] == "alice"
        assert set(job.export_paths) == {"design.md", "diagram.json", "context.json", "ownership.json"}

    @pytest.mark.asyncio
    async def test_status_progression_and_sandbox_paused(self, orchestrator, bus, sandbox):
        job, events = await _run(orchestrator, bus)

        statuses = [e.status for e in events if e.type == "status"]
        assert statuses == ["cloning", "analyzing", "generating", "completed"]
        assert sandbox.acquired == [job.sandbox_name]
        assert sandbox.paused == [job.sandbox_name]
        assert job.sandbox_paused is True

    @pytest.mark.asyncio
    async def test_agent_activity_becomes_events(self, orchestrator, bus):
        _, events = await _run(orchestrator, bus)
        types = [e.type for e in events]
        assert "thinking" in types
        tool_events = [e for e in events if e.type == "tool_use"]
        assert tool_events[0].tool == "read_file"

    @pytest.mark.asyncio
    async def test_ownership_reports_sub_progress(self, orchestrator, bus, ownership):
        _, events = await _run(orchestrator, bus)
        progress = [e for e in events if e.type == "stage_progress"]
        assert [(p.sub_progress.current, p.sub_progress.total) for p in progress] == [(1, 2), (2, 2)]
        assert ownership.calls[0]["nodes"][0]["id"] == "api"

    @pytest.mark.asyncio
    async def test_each_stage_starts_before_it_ends(self, orchestrator, bus):
        _, events = await _run(orchestrator, bus)
        for stage in StageName:
            assert _stage_events(events, stage) in (
                ["stage_start", "stage_complete"],
                ["stage_start", "stage_progress", "stage_progress", "stage_complete"],
            )

    @pytest.mark.asyncio
    async def test_rejects_disallowed_repository(self, orchestrator):
        with pytest.raises(InvalidRepositoryUrlError):
            await orchestrator.submit_job("https://gitlab.com/acme/widgets")


class TestSupplementaryFailure:
    """Diagram fails: ownership is skipped, export still runs, job is partial."""

    @pytest.mark.asyncio
    async def test_partial_completion(self, orchestrator, bus, agent):
        agent.diagram_error = AgentError(AgentErrorCode.AGENT_NO_RESPONSE, "no JSON in output")

        job, events = await _run(orchestrator, bus)

        assert job.status == JobStatus.COMPLETED.value
        assert job.partial_status == PartialStatus.PARTIAL.value
        assert job.stages[StageName.DIAGRAM].status == StageStatus.FAILED
        assert job.stages[StageName.DIAGRAM].error == "no JSON in output"
        assert job.stages[StageName.OWNERSHIP].status == StageStatus.SKIPPED
        assert "diagram" in job.stages[StageName.OWNERSHIP].skip_reason
        assert job.stages[StageName.EXPORT].status == StageStatus.COMPLETED
        assert "diagram.json" not in job.export_paths

        assert _stage_events(events, StageName.DIAGRAM) == ["stage_start", "stage_failed"]
        assert _stage_events(events, StageName.OWNERSHIP) == ["stage_skipped"]
        assert events[-1].partial_status == "partial"

    @pytest.mark.asyncio
    async def test_ownership_failure_does_not_block_export(self, orchestrator, bus, ownership):
        from repolens.exceptions import OwnershipLookupError
        ownership.error = OwnershipLookupError("GitHub API returned 403")

        job, _ = await _run(orchestrator, bus)

        assert job.stages[StageName.OWNERSHIP].status == StageStatus.FAILED
        assert job.stages[StageName.EXPORT].status == StageStatus.COMPLETED
        assert job.partial_status == PartialStatus.PARTIAL.value


class TestEssentialFailure:

    @pytest.mark.asyncio
    async def test_clone_failure_stops_pipeline(self, orchestrator, bus, sandbox, agent):
        sandbox.acquire_error = SandboxError("sandbox quota exceeded")

        job, events = await _run(orchestrator, bus)

        assert job.status == JobStatus.FAILED.value
        assert job.partial_status == PartialStatus.FAILED.value
        assert "sandbox quota exceeded" in job.error_message
        assert job.stages[StageName.CLONE].status == StageStatus.FAILED
        for stage in (StageName.ANALYSIS, StageName.DIAGRAM, StageName.OWNERSHIP, StageName.EXPORT):
            assert job.stages[stage].status == StageStatus.PENDING

        stage_failures = [e for e in events if e.type == "stage_failed"]
        assert [e.stage for e in stage_failures] == [StageName.CLONE]
        assert not any(getattr(e, "stage", None) not in (None, StageName.CLONE) for e in events)
        assert events[-1].type == "error"
        assert agent.analyze_calls == 0

    @pytest.mark.asyncio
    async def test_clone_reason_is_reported(self, orchestrator, bus, sandbox):
        sandbox.clone_failure = "git clone exited with code 128: repository not found"

        job, _ = await _run(orchestrator, bus)

        assert job.status == JobStatus.FAILED.value
        assert "repository not found" in job.stages[StageName.CLONE].error
        # The sandbox was acquired, so it is still paused on the way out.
        assert sandbox.paused == [job.sandbox_name]

    @pytest.mark.asyncio
    async def test_analysis_failure_fails_job(self, orchestrator, bus, agent, sandbox):
        agent.analysis_error = AgentError(AgentErrorCode.AGENT_NO_RESPONSE, "Agent returned no markdown")

        job, _ = await _run(orchestrator, bus)

        assert job.status == JobStatus.FAILED.value
        assert job.stages[StageName.CLONE].status == StageStatus.COMPLETED
        assert job.stages[StageName.ANALYSIS].status == StageStatus.FAILED
        assert job.stages[StageName.DIAGRAM].status == StageStatus.PENDING
        assert job.sandbox_paused is True

    @pytest.mark.asyncio
    async def test_unexpected_exception_still_closes_stage(self, orchestrator, bus, agent):
        agent.analysis_error = KeyError("markdown")

        job, _ = await _run(orchestrator, bus)

        assert job.stages[StageName.ANALYSIS].status == StageStatus.FAILED
        assert job.status == JobStatus.FAILED.value


class TestRetry:

    async def _partial_job(self, orchestrator, bus, agent):
        agent.diagram_error = AgentError(AgentErrorCode.AGENT_NO_RESPONSE, "no JSON in output")
        job, _ = await _run(orchestrator, bus)
        agent.diagram_error = None
        return job

    @pytest.mark.asyncio
    async def test_retry_runs_only_the_requested_stage(self, orchestrator, bus, agent, ownership):
        job = await self._partial_job(orchestrator, bus, agent)
        events = []
        bus.subscribe(job.id, events.append)

        stage = await orchestrator.request_retry(job.id, "diagram")
        await orchestrator.runner.wait_idle()

        assert stage == StageName.DIAGRAM
        updated = orchestrator.store.get(job.id)
        assert updated.stages[StageName.DIAGRAM].status == StageStatus.COMPLETED
        assert updated.stages[StageName.OWNERSHIP].status == StageStatus.SKIPPED
        assert updated.react_flow_data is not None
        assert ownership.calls == []
        assert _stage_events(events, StageName.DIAGRAM) == ["stage_start", "stage_complete"]
        assert updated.partial_status == PartialStatus.COMPLETE.value
        assert updated.sandbox_paused is True

    @pytest.mark.asyncio
    async def test_retry_emits_single_stage_start(self, orchestrator, bus, agent):
        job = await self._partial_job(orchestrator, bus, agent)
        events = []
        bus.subscribe(job.id, events.append)

        await orchestrator.request_retry(job.id, "diagram")
        await orchestrator.runner.wait_idle()

        assert [e.type for e in events].count("stage_start") == 1

    @pytest.mark.asyncio
    async def test_retry_of_completed_stage_is_rejected_without_side_effects(self, orchestrator, bus):
        job, _ = await _run(orchestrator, bus)
        before = orchestrator.store.get(job.id)
        buffered = len(bus.replay(job.id))

        with pytest.raises(StagePreconditionError):
            await orchestrator.request_retry(job.id, "export")

        after = orchestrator.store.get(job.id)
        assert after.stages == before.stages
        assert len(bus.replay(job.id)) == buffered
        assert orchestrator.runner.pending == 0

    @pytest.mark.asyncio
    async def test_second_concurrent_retry_is_rejected(self, orchestrator, bus, agent):
        job = await self._partial_job(orchestrator, bus, agent)

        await orchestrator.request_retry(job.id, "diagram")
        with pytest.raises(StagePreconditionError):
            await orchestrator.request_retry(job.id, "diagram")
        await orchestrator.runner.wait_idle()

        assert agent.diagram_calls == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage", ["clone", "analysis", "podcast"])
    async def test_non_retryable_stages(self, orchestrator, bus, stage):
        job, _ = await _run(orchestrator, bus)
        with pytest.raises(StageNotRetryableError):
            await orchestrator.request_retry(job.id, stage)

    @pytest.mark.asyncio
    async def test_failed_retry_records_failure_again(self, orchestrator, bus, agent):
        job = await self._partial_job(orchestrator, bus, agent)
        agent.diagram_error = AgentError(AgentErrorCode.AGENT_NO_RESPONSE, "still no JSON")

        await orchestrator.request_retry(job.id, "diagram")
        await orchestrator.runner.wait_idle()

        updated = orchestrator.store.get(job.id)
        assert updated.stages[StageName.DIAGRAM].status == StageStatus.FAILED
        assert updated.stages[StageName.DIAGRAM].error == "still no JSON"
        assert updated.partial_status == PartialStatus.PARTIAL.value

    @pytest.mark.asyncio
    async def test_retry_fails_stage_when_sandbox_cannot_resume(self, orchestrator, bus, agent, sandbox):
        job = await self._partial_job(orchestrator, bus, agent)
        sandbox.resume_error = SandboxError("sandbox gone")
        events = []
        bus.subscribe(job.id, events.append)

        await orchestrator.request_retry(job.id, "diagram")
        await orchestrator.runner.wait_idle()

        updated = orchestrator.store.get(job.id)
        assert updated.stages[StageName.DIAGRAM].status == StageStatus.FAILED
        assert "sandbox gone" in updated.stages[StageName.DIAGRAM].error
        assert _stage_events(events, StageName.DIAGRAM) == ["stage_start", "stage_failed"]

    @pytest.mark.asyncio
    async def test_ownership_retry_reads_current_diagram(self, orchestrator, bus, ownership):
        from repolens.exceptions import OwnershipLookupError
        ownership.error = OwnershipLookupError("rate limited")
        job, _ = await _run(orchestrator, bus)
        ownership.error = None
        orchestrator.store.update_job(job.id, react_flow_data={
            "architecture": {"nodes": [{"id": "billing", "data": {"label": "Billing"}}], "edges": []},
        })

        await orchestrator.request_retry(job.id, "ownership")
        await orchestrator.runner.wait_idle()

        assert ownership.calls[-1]["nodes"][0]["id"] == "billing"
        updated = orchestrator.store.get(job.id)
        assert updated.stages[StageName.OWNERSHIP].status == StageStatus.COMPLETED
        assert updated.ownership_data["global_owners"][0]["name"] == "alice"


class TestSandboxSingleWriter:

    @pytest.mark.asyncio
    async def test_retry_rejected_while_pipeline_running(self, orchestrator, store):
        job = make_job(store, status=JobStatus.GENERATING, stages={
            StageName.CLONE: StageStatus.COMPLETED,
            StageName.ANALYSIS: StageStatus.COMPLETED,
            StageName.DIAGRAM: StageStatus.FAILED,
        })

        with pytest.raises(JobNotReadyError):
            await orchestrator.request_retry(job.id, "diagram")

        assert orchestrator.runner.pending == 0
        assert store.get(job.id).stages[StageName.DIAGRAM].status == StageStatus.FAILED

    @pytest.mark.asyncio
    async def test_pipeline_pauses_sandbox_before_completing(self, orchestrator, bus, sandbox):
        seen = []

        def on_event(event):
            if event.type == "complete":
                seen.append(list(sandbox.paused))

        job = orchestrator.store.create_job(REPO_URL)
        bus.subscribe(job.id, on_event)
        await orchestrator.run_pipeline(job.id, REPO_URL)

        assert seen == [[job.sandbox_name]]
        assert sandbox.paused == [job.sandbox_name]

    @pytest.mark.asyncio
    async def test_retry_cancels_chat_idle_countdown(self, orchestrator, store, agent, sandbox):
        paused = []

        async def on_idle(job_id):
            paused.append(job_id)

        orchestrator.reclaimer = IdleReclaimer(0.05, on_idle)
        job = make_job(store, stages={
            StageName.CLONE: StageStatus.COMPLETED,
            StageName.ANALYSIS: StageStatus.COMPLETED,
            StageName.DIAGRAM: StageStatus.FAILED,
        })
        orchestrator.reclaimer.touch(job.id)
        agent.diagram_gate = asyncio.Event()

        await orchestrator.request_retry(job.id, "diagram")
        await asyncio.sleep(0.2)

        assert paused == []
        assert sandbox.paused == []
        assert not orchestrator.reclaimer.is_pending(job.id)

        agent.diagram_gate.set()
        await orchestrator.runner.wait_idle()
        assert store.get(job.id).stages[StageName.DIAGRAM].status == StageStatus.COMPLETED
        assert sandbox.paused == [job.sandbox_name]
        assert job.id not in store._locks
