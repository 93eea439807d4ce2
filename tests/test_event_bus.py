"""Tests for EventBus publish, replay and stream registration."""

import json
import threading

import pytest
from pydantic import ValidationError

from repolens.pipeline.event_bus import EventBus
from repolens.pipeline.stages import StageName
from repolens.schemas.events import (
    CompleteEvent,
    ErrorEvent,
    ProgressEvent,
    StageStartEvent,
    parse_event,
    to_sse_frame,
)


def _progress(n: int) -> ProgressEvent:
    return ProgressEvent(message=f"step {n}")


class TestPublish:

    def test_publish_stamps_job_and_increasing_timestamps(self):
        bus = EventBus()
        first = bus.publish("job-1", _progress(1))
        second = bus.publish("job-1", _progress(2))
        assert first.job_id == "job-1"
        assert second.timestamp > first.timestamp

    def test_listeners_receive_events_in_order(self):
        bus = EventBus()
        received = []
        bus.subscribe("job-1", received.append)
        for n in range(5):
            bus.publish("job-1", _progress(n))
        assert [e.message for e in received] == [f"step {n}" for n in range(5)]

    def test_jobs_are_isolated(self):
        bus = EventBus()
        received = []
        bus.subscribe("job-1", received.append)
        bus.publish("job-2", _progress(1))
        assert received == []
        assert bus.replay("job-2")[0].job_id == "job-2"

    def test_failing_listener_does_not_block_others(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("listener down")

        bus.subscribe("job-1", broken)
        bus.subscribe("job-1", received.append)
        bus.publish("job-1", _progress(1))
        assert len(received) == 1

    def test_unsubscribe_is_idempotent(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe("job-1", received.append)
        unsubscribe()
        unsubscribe()
        bus.publish("job-1", _progress(1))
        assert received == []
        assert bus.listener_count("job-1") == 0


class TestReplay:

    def test_buffer_keeps_most_recent_events(self):
        bus = EventBus(buffer_size=3)
        for n in range(5):
            bus.publish("job-1", _progress(n))
        assert [e.message for e in bus.replay("job-1")] == ["step 2", "step 3", "step 4"]

    def test_replay_unknown_job_is_empty(self):
        assert EventBus().replay("missing") == []

    def test_clear_drops_buffer_and_listeners(self):
        bus = EventBus()
        bus.subscribe("job-1", lambda e: None)
        bus.publish("job-1", _progress(1))
        bus.clear("job-1")
        assert bus.replay("job-1") == []
        assert bus.listener_count("job-1") == 0

    def test_rejects_empty_buffer(self):
        with pytest.raises(ValueError):
            EventBus(buffer_size=0)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestRetention:

    def test_finished_channel_is_pruned_after_retention(self):
        clock = FakeClock()
        bus = EventBus(retention_seconds=60, clock=clock)
        bus.publish("job-1", _progress(1))
        bus.publish("job-1", CompleteEvent(message="done", partial_status="complete"))

        clock.now = 30
        assert bus.prune() == 0
        clock.now = 61
        assert bus.prune() == 1
        assert bus.replay("job-1") == []

    def test_running_job_is_kept(self):
        clock = FakeClock()
        bus = EventBus(retention_seconds=60, clock=clock)
        bus.publish("job-1", _progress(1))
        clock.now = 1000
        assert bus.prune() == 0
        assert len(bus.replay("job-1")) == 1

    def test_channel_with_listener_is_kept(self):
        clock = FakeClock()
        bus = EventBus(retention_seconds=60, clock=clock)
        unsubscribe = bus.subscribe("job-1", lambda e: None)
        bus.publish("job-1", ErrorEvent(message="Analysis failed: boom", error="boom"))
        clock.now = 120
        assert bus.prune() == 0

        unsubscribe()
        assert bus.prune() == 1

    def test_new_activity_reopens_finished_channel(self):
        clock = FakeClock()
        bus = EventBus(retention_seconds=60, clock=clock)
        bus.publish("job-1", CompleteEvent(message="done"))
        bus.publish("job-1", StageStartEvent(stage=StageName.DIAGRAM, message="Starting diagram"))
        clock.now = 120
        assert bus.prune() == 0

    def test_publish_prunes_periodically(self):
        clock = FakeClock()
        bus = EventBus(retention_seconds=60, clock=clock)
        bus.publish("old-job", CompleteEvent(message="done"))
        clock.now = 120
        for n in range(200):
            bus.publish("job-2", _progress(n))
        assert bus.replay("old-job") == []


class TestOpenStream:

    def test_snapshot_then_live_without_gap_or_duplicate(self):
        bus = EventBus()
        bus.publish("job-1", _progress(0))
        live = []
        snapshot, unsubscribe = bus.open_stream("job-1", live.append)
        bus.publish("job-1", _progress(1))
        unsubscribe()
        assert [e.message for e in snapshot] == ["step 0"]
        assert [e.message for e in live] == ["step 1"]

    def test_concurrent_publishers_are_seen_exactly_once(self):
        bus = EventBus(buffer_size=1000)
        seen = []
        start = threading.Event()

        def publisher(offset: int):
            start.wait()
            for n in range(100):
                bus.publish("job-1", _progress(offset + n))

        threads = [threading.Thread(target=publisher, args=(i * 100,)) for i in range(4)]
        for t in threads:
            t.start()
        start.set()
        snapshot, unsubscribe = bus.open_stream("job-1", seen.append)
        for t in threads:
            t.join()
        unsubscribe()

        ids = [e.id for e in snapshot] + [e.id for e in seen]
        assert len(ids) == 400
        assert len(set(ids)) == 400
        timestamps = [e.timestamp for e in snapshot + seen]
        assert timestamps == sorted(timestamps)


class TestEventSchema:

    def test_sse_frame_round_trips_through_discriminator(self):
        bus = EventBus()
        event = bus.publish("job-1", StageStartEvent(stage=StageName.DIAGRAM, message="Starting diagram"))
        frame = to_sse_frame(event)
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        parsed = parse_event(json.loads(frame[len("data: "):]))
        assert isinstance(parsed, StageStartEvent)
        assert parsed.stage == StageName.DIAGRAM

    def test_stage_event_requires_stage(self):
        with pytest.raises(ValidationError):
            parse_event({"type": "stage_complete", "message": "done"})
