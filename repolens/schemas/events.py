"""Job event payloads.

Each event kind is its own model carrying only the fields that kind needs,
joined into the ``JobEvent`` union on the ``type`` discriminator. A
``stage_complete`` without a stage name cannot be constructed.

``id``, ``job_id`` and ``timestamp`` are stamped by the EventBus at publish
time; builders leave them at their defaults.
"""

import uuid
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from ..pipeline.stages import StageName


def _event_id() -> str:
    return uuid.uuid4().hex


class _EventBase(BaseModel):
    id: str = Field(default_factory=_event_id)
    job_id: str = ""
    message: str
    timestamp: int = 0  # epoch milliseconds, strictly increasing per job


class ProgressEvent(_EventBase):
    type: Literal["progress"] = "progress"
    progress: Optional[float] = Field(default=None, ge=0, le=100)


class StatusEvent(_EventBase):
    type: Literal["status"] = "status"
    status: str


class CompleteEvent(_EventBase):
    type: Literal["complete"] = "complete"
    partial_status: Optional[str] = None


class ErrorEvent(_EventBase):
    type: Literal["error"] = "error"
    error: str


class ThinkingEvent(_EventBase):
    type: Literal["thinking"] = "thinking"


class ToolUseEvent(_EventBase):
    type: Literal["tool_use"] = "tool_use"
    tool: str


class StageStartEvent(_EventBase):
    type: Literal["stage_start"] = "stage_start"
    stage: StageName


class StageCompleteEvent(_EventBase):
    type: Literal["stage_complete"] = "stage_complete"
    stage: StageName
    duration_ms: Optional[int] = None


class StageFailedEvent(_EventBase):
    type: Literal["stage_failed"] = "stage_failed"
    stage: StageName
    error: str
    duration_ms: Optional[int] = None


class SubProgress(BaseModel):
    current: int
    total: int
    unit: str


class StageProgressEvent(_EventBase):
    type: Literal["stage_progress"] = "stage_progress"
    stage: StageName
    sub_progress: Optional[SubProgress] = None


class StageSkippedEvent(_EventBase):
    type: Literal["stage_skipped"] = "stage_skipped"
    stage: StageName
    skip_reason: str


JobEvent = Annotated[
    Union[
        ProgressEvent,
        StatusEvent,
        CompleteEvent,
        ErrorEvent,
        ThinkingEvent,
        ToolUseEvent,
        StageStartEvent,
        StageCompleteEvent,
        StageFailedEvent,
        StageProgressEvent,
        StageSkippedEvent,
    ],
    Field(discriminator="type"),
]

job_event_adapter: TypeAdapter = TypeAdapter(JobEvent)

STAGE_EVENT_TYPES = frozenset({
    "stage_start", "stage_complete", "stage_failed", "stage_progress", "stage_skipped",
})


def parse_event(data: dict) -> "JobEvent":
    """Validate a raw dict into the matching event model."""
    return job_event_adapter.validate_python(data)


def to_sse_frame(event: "JobEvent") -> str:
    """Serialise one event as a ``data: <json>`` server-sent-event frame."""
    return f"data: {event.model_dump_json()}\n\n"
