"""Tests for the debounced idle timer and the background task runner."""

import asyncio

import pytest

from repolens.pipeline.idle_reclaimer import IdleReclaimer
from repolens.pipeline.stages import StageName, StageStatus
from repolens.pipeline.task_runner import TaskRunner

from fakes import make_job


class TestIdleReclaimer:

    @pytest.mark.asyncio
    async def test_fires_once_after_timeout(self):
        fired = []

        async def on_idle(job_id):
            fired.append(job_id)

        reclaimer = IdleReclaimer(0.02, on_idle)
        reclaimer.touch("job-1")
        assert reclaimer.is_pending("job-1")
        await asyncio.sleep(0.08)
        assert fired == ["job-1"]
        assert not reclaimer.is_pending("job-1")

    @pytest.mark.asyncio
    async def test_touch_restarts_countdown(self):
        fired = []

        async def on_idle(job_id):
            fired.append(job_id)

        reclaimer = IdleReclaimer(0.15, on_idle)
        reclaimer.touch("job-1")
        for _ in range(4):
            await asyncio.sleep(0.05)
            reclaimer.touch("job-1")
        assert fired == []
        await asyncio.sleep(0.3)
        assert fired == ["job-1"]

    @pytest.mark.asyncio
    async def test_cancel_prevents_firing(self):
        fired = []

        async def on_idle(job_id):
            fired.append(job_id)

        reclaimer = IdleReclaimer(0.02, on_idle)
        reclaimer.touch("job-1")
        assert reclaimer.cancel("job-1") is True
        assert reclaimer.cancel("job-1") is False
        await asyncio.sleep(0.05)
        assert fired == []

    @pytest.mark.asyncio
    async def test_callback_errors_are_contained(self):
        async def on_idle(job_id):
            raise RuntimeError("sandbox API down")

        reclaimer = IdleReclaimer(0.01, on_idle)
        reclaimer.touch("job-1")
        await asyncio.sleep(0.03)
        task = reclaimer.pending_task("job-1")
        if task is not None:
            await task
        await reclaimer.shutdown()


class TestTaskRunner:

    @pytest.mark.asyncio
    async def test_wait_idle_waits_for_submitted_work(self):
        runner = TaskRunner()
        done = []

        async def work():
            await asyncio.sleep(0.01)
            done.append(True)

        runner.submit(work(), name="work")
        assert runner.pending == 1
        await runner.wait_idle()
        assert done == [True]
        assert runner.pending == 0

    @pytest.mark.asyncio
    async def test_crashing_task_is_released(self):
        runner = TaskRunner()

        async def crash():
            raise RuntimeError("boom")

        runner.submit(crash(), name="crash")
        await runner.wait_idle()
        assert runner.pending == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_outstanding_tasks(self):
        runner = TaskRunner()
        started = asyncio.Event()

        async def forever():
            started.set()
            await asyncio.sleep(3600)

        task = runner.submit(forever(), name="forever")
        await started.wait()
        await runner.shutdown()
        assert task.cancelled()


class TestIdleSandboxPause:

    @pytest.mark.asyncio
    async def test_idle_job_sandbox_is_paused(self, services, store, sandbox):
        job = make_job(store)

        services.reclaimer.touch(job.id)
        await asyncio.sleep(0.15)

        assert sandbox.paused == [job.sandbox_name]
        assert store.get(job.id).sandbox_paused is True

    @pytest.mark.asyncio
    async def test_running_stage_keeps_sandbox_active(self, services, store, sandbox):
        job = make_job(store, stages={StageName.EXPORT: StageStatus.IN_PROGRESS}, sandbox_paused=False)

        services.reclaimer.touch(job.id)
        await asyncio.sleep(0.15)

        assert sandbox.paused == []
        assert store.get(job.id).sandbox_paused is False

    @pytest.mark.asyncio
    async def test_retry_after_chat_is_not_paused_mid_stage(self, services, store, sandbox, agent):
        job = make_job(store, stages={
            StageName.CLONE: StageStatus.COMPLETED,
            StageName.ANALYSIS: StageStatus.COMPLETED,
            StageName.DIAGRAM: StageStatus.FAILED,
        })
        services.reclaimer.touch(job.id)
        agent.diagram_gate = asyncio.Event()

        await services.orchestrator.request_retry(job.id, "diagram")
        await asyncio.sleep(0.2)

        assert sandbox.paused == []
        assert store.get(job.id).sandbox_paused is False

        agent.diagram_gate.set()
        await services.runner.wait_idle()
        assert sandbox.paused == [job.sandbox_name]
