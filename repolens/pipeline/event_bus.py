"""Per-job publish/subscribe with a bounded replay buffer.

One ``EventBus`` is constructed per process (see ``core.services``) and
injected wherever progress is reported or consumed. Tests build their own.

Listeners are plain callables invoked synchronously inside ``publish``.
Stream endpoints register a listener that only enqueues onto an
``asyncio.Queue``, so a slow HTTP client never blocks the pipeline.

Channels of finished jobs (last event ``complete`` or ``error``) with no
listeners left are dropped once they are older than the retention window;
the job store still holds the outcome.

All state is guarded by one lock. ``open_stream`` takes the replay
snapshot and registers the listener under that lock, which is what makes
replay followed by live delivery gap-free and duplicate-free.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

from ..schemas.events import JobEvent

logger = logging.getLogger(__name__)

Listener = Callable[[JobEvent], None]
Unsubscribe = Callable[[], None]

DEFAULT_BUFFER_SIZE = 100
DEFAULT_RETENTION_SECONDS = 600.0

_TERMINAL_EVENTS = frozenset({"complete", "error"})
_PRUNE_EVERY = 200


class _Channel:
    __slots__ = ("buffer", "listeners", "last_timestamp", "finished_at")

    def __init__(self, capacity: int):
        self.buffer: Deque[JobEvent] = deque(maxlen=capacity)
        self.listeners: Dict[int, Listener] = {}
        self.last_timestamp = 0
        self.finished_at: Optional[float] = None


class EventBus:
    """Fan-out of job events to live listeners plus a replay ring."""

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self._buffer_size = buffer_size
        self._retention_seconds = retention_seconds
        self._clock = clock
        self._publish_count = 0
        self._channels: Dict[str, _Channel] = {}
        self._lock = threading.RLock()
        self._next_token = 0

    def _channel(self, job_id: str) -> _Channel:
        channel = self._channels.get(job_id)
        if channel is None:
            channel = _Channel(self._buffer_size)
            self._channels[job_id] = channel
        return channel

    def _stamp(self, channel: _Channel, job_id: str, event: JobEvent) -> JobEvent:
        now_ms = int(time.time() * 1000)
        timestamp = max(now_ms, channel.last_timestamp + 1)
        channel.last_timestamp = timestamp
        return event.model_copy(update={"job_id": job_id, "timestamp": timestamp})

    def publish(self, job_id: str, event: JobEvent) -> JobEvent:
        """Buffer *event* and hand it to every listener of *job_id*.

        A listener that raises is logged and skipped; the remaining
        listeners still receive the event. Returns the stamped event.
        """
        with self._lock:
            channel = self._channel(job_id)
            stamped = self._stamp(channel, job_id, event)
            channel.buffer.append(stamped)
            channel.finished_at = self._clock() if stamped.type in _TERMINAL_EVENTS else None
            listeners = list(channel.listeners.values())

            for listener in listeners:
                try:
                    listener(stamped)
                except Exception:
                    logger.exception(
                        "Event listener failed",
                        extra={"event_type": stamped.type, "listener_job_id": job_id},
                    )

            self._publish_count += 1
            if self._publish_count % _PRUNE_EVERY == 0:
                self.prune()
        return stamped

    def subscribe(self, job_id: str, listener: Listener) -> Unsubscribe:
        """Register *listener* for live events. Returns an idempotent unsubscribe."""
        with self._lock:
            return self._register(job_id, listener)

    def _register(self, job_id: str, listener: Listener) -> Unsubscribe:
        token = self._next_token
        self._next_token += 1
        self._channel(job_id).listeners[token] = listener

        def unsubscribe() -> None:
            with self._lock:
                channel = self._channels.get(job_id)
                if channel is not None:
                    channel.listeners.pop(token, None)

        return unsubscribe

    def replay(self, job_id: str) -> List[JobEvent]:
        """Buffered events for *job_id*, oldest first."""
        with self._lock:
            channel = self._channels.get(job_id)
            return list(channel.buffer) if channel else []

    def open_stream(self, job_id: str, listener: Listener) -> Tuple[List[JobEvent], Unsubscribe]:
        """Snapshot the buffer and subscribe in one atomic step.

        Every event published after the snapshot reaches *listener*; none
        in the snapshot does.
        """
        with self._lock:
            channel = self._channel(job_id)
            snapshot = list(channel.buffer)
            unsubscribe = self._register(job_id, listener)
        return snapshot, unsubscribe

    def listener_count(self, job_id: str) -> int:
        with self._lock:
            channel = self._channels.get(job_id)
            return len(channel.listeners) if channel else 0

    def prune(self, now: Optional[float] = None) -> int:
        """Drop finished channels past retention that nobody listens to.

        Returns the number of channels dropped.
        """
        with self._lock:
            now = self._clock() if now is None else now
            expired = [
                job_id for job_id, channel in self._channels.items()
                if channel.finished_at is not None
                and not channel.listeners
                and now - channel.finished_at >= self._retention_seconds
            ]
            for job_id in expired:
                del self._channels[job_id]
        if expired:
            logger.debug("Pruned %d finished event channels", len(expired))
        return len(expired)

    def clear(self, job_id: str) -> None:
        """Drop the buffer and all listeners for *job_id*."""
        with self._lock:
            self._channels.pop(job_id, None)
