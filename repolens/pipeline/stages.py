"""Stage vocabulary and the per-stage state machine.

Dependencies are declared, never computed:

    clone     -> []
    analysis  -> [clone]
    diagram   -> [analysis]
    ownership -> [diagram]
    export    -> [analysis]

A stage record moves only along these edges::

    pending     -> in_progress | skipped
    in_progress -> completed | failed
    failed      -> in_progress          (scoped retry)

Everything else raises ``InvalidStageTransition``. ``apply_transition``
is the only function that mutates a record, so the store and the
orchestrator cannot drift from the table below.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Mapping, Optional

from pydantic import BaseModel

from ..exceptions import InvalidStageTransition


class StageName(str, Enum):
    CLONE = "clone"
    ANALYSIS = "analysis"
    DIAGRAM = "diagram"
    OWNERSHIP = "ownership"
    EXPORT = "export"


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PartialStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


# Execution order. Also the order stages appear in projections.
STAGE_ORDER: tuple[StageName, ...] = (
    StageName.CLONE,
    StageName.ANALYSIS,
    StageName.DIAGRAM,
    StageName.OWNERSHIP,
    StageName.EXPORT,
)

STAGE_DEPENDENCIES: Dict[StageName, tuple[StageName, ...]] = {
    StageName.CLONE: (),
    StageName.ANALYSIS: (StageName.CLONE,),
    StageName.DIAGRAM: (StageName.ANALYSIS,),
    StageName.OWNERSHIP: (StageName.DIAGRAM,),
    StageName.EXPORT: (StageName.ANALYSIS,),
}

ESSENTIAL_STAGES = frozenset({StageName.CLONE, StageName.ANALYSIS})
RETRYABLE_STAGES = frozenset({StageName.DIAGRAM, StageName.OWNERSHIP, StageName.EXPORT})

_ALLOWED: Dict[StageStatus, frozenset] = {
    StageStatus.PENDING: frozenset({StageStatus.IN_PROGRESS, StageStatus.SKIPPED}),
    StageStatus.IN_PROGRESS: frozenset({StageStatus.COMPLETED, StageStatus.FAILED}),
    StageStatus.FAILED: frozenset({StageStatus.IN_PROGRESS}),
    StageStatus.COMPLETED: frozenset(),
    StageStatus.SKIPPED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageRecord(BaseModel):
    """Persisted state of one pipeline stage."""

    status: StageStatus = StageStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    skip_reason: Optional[str] = None


StageMap = Dict[StageName, StageRecord]


def initial_stage_map() -> StageMap:
    """All five stages in ``pending``."""
    return {name: StageRecord() for name in STAGE_ORDER}


def can_transition(current: StageStatus, target: StageStatus) -> bool:
    return target in _ALLOWED[current]


def apply_transition(
    stage: StageName,
    record: StageRecord,
    target: StageStatus,
    *,
    error: Optional[str] = None,
    skip_reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StageRecord:
    """Return a new record moved to *target*.

    Entering ``in_progress`` stamps ``started_at`` and clears the previous
    outcome. Leaving it stamps ``completed_at`` and ``duration_ms``.

    Raises:
        InvalidStageTransition: if the edge is not in the transition table.
    """
    if not can_transition(record.status, target):
        raise InvalidStageTransition(stage.value, record.status.value, target.value)

    now = now or _utcnow()

    if target == StageStatus.IN_PROGRESS:
        return StageRecord(status=target, started_at=now)

    if target == StageStatus.SKIPPED:
        return StageRecord(status=target, completed_at=now, skip_reason=skip_reason)

    duration_ms = None
    if record.started_at is not None:
        duration_ms = max(0, int((now - record.started_at).total_seconds() * 1000))
    return StageRecord(
        status=target,
        started_at=record.started_at,
        completed_at=now,
        duration_ms=duration_ms,
        error=error if target == StageStatus.FAILED else None,
    )


def blocking_dependency(stage: StageName, stages: Mapping[StageName, StageRecord]) -> Optional[StageName]:
    """First declared dependency of *stage* that is not completed, if any."""
    for dep in STAGE_DEPENDENCIES[stage]:
        record = stages.get(dep)
        if record is None or record.status != StageStatus.COMPLETED:
            return dep
    return None


def derive_partial_status(stages: Mapping[StageName, StageRecord]) -> PartialStatus:
    """Summarise a stage map.

    ``failed`` when an essential stage failed, ``partial`` when any
    supplementary stage failed or was skipped, otherwise ``complete``.
    """
    for name in ESSENTIAL_STAGES:
        record = stages.get(name)
        if record is not None and record.status == StageStatus.FAILED:
            return PartialStatus.FAILED
    for name in RETRYABLE_STAGES:
        record = stages.get(name)
        if record is not None and record.status in (StageStatus.FAILED, StageStatus.SKIPPED):
            return PartialStatus.PARTIAL
    return PartialStatus.COMPLETE


def has_failed_stage(stages: Mapping[StageName, StageRecord]) -> bool:
    return any(r.status == StageStatus.FAILED for r in stages.values())


def dump_stage_map(stages: Mapping[StageName, StageRecord]) -> dict:
    """JSON-ready dict keyed by stage name, in execution order."""
    return {
        name.value: stages[name].model_dump(mode="json")
        for name in STAGE_ORDER
        if name in stages
    }


def load_stage_map(raw: Optional[Mapping]) -> StageMap:
    """Inverse of ``dump_stage_map``. Missing stages come back as pending."""
    stages = initial_stage_map()
    for key, value in (raw or {}).items():
        try:
            name = StageName(key)
        except ValueError:
            continue
        stages[name] = StageRecord.model_validate(value)
    return stages
