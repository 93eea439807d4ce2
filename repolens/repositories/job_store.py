"""Session-per-operation job store.

The orchestrator is async and long-lived; it must not hold a SQLAlchemy
session across awaits. ``JobStore`` opens a fresh session for every call,
commits, and returns detached ``JobRecord`` snapshots. Async callers run
these methods with ``asyncio.to_thread``.

Stage history is read-modify-write. ``update_stage`` and ``claim_retry``
hold a per-job lock (plus ``SELECT ... FOR UPDATE`` where the database
supports it) while they read the current map, change one stage, and write
the whole map back, so concurrent updates to different stages of the same
job are never lost.
"""

import logging
import secrets
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional

import sqlalchemy.exc
from sqlalchemy.orm import Session

from ..exceptions import (
    DatabaseError,
    JobNotReadyError,
    SandboxBusyError,
    ShareNotFoundError,
    StagePreconditionError,
)
from ..models import AnalysisJob, ChatMessage
from ..models.analysis_job import PIPELINE_STATUS_RANK, TERMINAL_STATUSES, JobStatus
from ..pipeline.stages import (
    PartialStatus,
    StageName,
    StageRecord,
    StageStatus,
    apply_transition,
    dump_stage_map,
    has_failed_stage,
    initial_stage_map,
    load_stage_map,
)
from ..schemas.job import JobRecord
from .job_repository import ChatRepository, JobRepository

logger = logging.getLogger(__name__)


def sandbox_name_for(job_id: str) -> str:
    return f"analysis-{job_id[:8]}"


class JobStore:
    """Durable job state. Every public method is one short transaction."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except sqlalchemy.exc.SQLAlchemyError as e:
            db.rollback()
            logger.error("Job store operation failed: %s", e)
            raise DatabaseError("Job store operation failed", original_error=e) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _job_lock(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[job_id] = lock
            return lock

    def discard_lock(self, job_id: str) -> None:
        """Forget the per-job lock once nothing is updating the job's stages."""
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is not None and not lock.locked():
                del self._locks[job_id]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, repo_url: str, content_style: str = "overview") -> JobRecord:
        job_id = str(uuid.uuid4())
        with self._session() as db:
            job = JobRepository(db).add(AnalysisJob(
                id=job_id,
                repo_url=repo_url,
                content_style=content_style,
                status=JobStatus.QUEUED.value,
                sandbox_name=sandbox_name_for(job_id),
                sandbox_paused=False,
                stage_history=dump_stage_map(initial_stage_map()),
            ))
            record = JobRecord.from_model(job)
        logger.info("Created job %s for %s", job_id, repo_url)
        return record

    def get(self, job_id: str, include_deleted: bool = False) -> JobRecord:
        with self._session() as db:
            return JobRecord.from_model(JobRepository(db, include_deleted).get_by_id(job_id))

    def list_recent(self, limit: int = 20, repo_url: Optional[str] = None) -> List[JobRecord]:
        with self._session() as db:
            return [JobRecord.from_model(j) for j in JobRepository(db).list_recent(limit, repo_url)]

    def count(self) -> int:
        with self._session() as db:
            return JobRepository(db).count()

    def update_job(self, job_id: str, **fields) -> JobRecord:
        """Set plain columns on a job.

        A ``status`` change is rejected if it would move a pipeline status
        backwards (e.g. ``completed`` -> ``analyzing``).
        """
        with self._session() as db:
            job = JobRepository(db, include_deleted=True).get_by_id(job_id, for_update=True)
            if "status" in fields:
                _check_status_order(job.status, fields["status"])
            for key, value in fields.items():
                if key == "stage_history" or not hasattr(AnalysisJob, key):
                    raise ValueError(f"Unknown or protected job field: {key}")
                if isinstance(value, JobStatus):
                    value = value.value
                setattr(job, key, value)
            db.flush()
            return JobRecord.from_model(job)

    def finalize(
        self,
        job_id: str,
        status: JobStatus,
        partial_status: PartialStatus,
        error_message: Optional[str] = None,
    ) -> JobRecord:
        fields = {
            "status": status,
            "partial_status": partial_status.value,
            "completed_at": datetime.now(timezone.utc),
        }
        if error_message is not None:
            fields["error_message"] = error_message
        record = self.update_job(job_id, **fields)
        self.discard_lock(job_id)
        return record

    def set_sandbox_paused(self, job_id: str, paused: bool) -> JobRecord:
        return self.update_job(job_id, sandbox_paused=paused)

    def soft_delete(self, job_id: str) -> JobRecord:
        record = self.update_job(job_id, deleted=True, deleted_at=datetime.now(timezone.utc))
        self.discard_lock(job_id)
        return record

    # ------------------------------------------------------------------
    # Stage history
    # ------------------------------------------------------------------

    def update_stage(
        self,
        job_id: str,
        stage: StageName,
        target: StageStatus,
        *,
        error: Optional[str] = None,
        skip_reason: Optional[str] = None,
    ) -> StageRecord:
        """Move one stage to *target* and persist the merged map.

        Raises:
            InvalidStageTransition: if the move is not allowed.
        """
        with self._job_lock(job_id):
            with self._session() as db:
                job = JobRepository(db, include_deleted=True).get_by_id(job_id, for_update=True)
                stages = load_stage_map(job.stage_history)
                updated = apply_transition(
                    stage, stages[stage], target, error=error, skip_reason=skip_reason
                )
                stages[stage] = updated
                job.stage_history = dump_stage_map(stages)
                return updated

    def claim_retry(self, job_id: str, stage: StageName) -> StageRecord:
        """Atomically move a failed stage to ``in_progress``.

        The sandbox has one writer at a time: the pipeline until the job is
        completed, then at most one retried stage.

        Raises:
            JobNotReadyError: if the pipeline has not completed.
            SandboxBusyError: if another stage is already running.
            StagePreconditionError: if the stage is not currently failed.
        """
        with self._job_lock(job_id):
            with self._session() as db:
                job = JobRepository(db).get_by_id(job_id, for_update=True)
                if job.status != JobStatus.COMPLETED.value:
                    raise JobNotReadyError(job_id, job.status)
                stages = load_stage_map(job.stage_history)
                current = stages[stage]
                if current.status != StageStatus.FAILED:
                    raise StagePreconditionError(job_id, stage.value, current.status.value)
                running = [name for name, record in stages.items() if record.status == StageStatus.IN_PROGRESS]
                if running:
                    raise SandboxBusyError(job_id, running[0].value)
                updated = apply_transition(stage, current, StageStatus.IN_PROGRESS)
                stages[stage] = updated
                job.stage_history = dump_stage_map(stages)
                return updated

    def settle_after_retry(self, job_id: str) -> JobRecord:
        """Flip ``partial_status`` to complete once no stage is left failed."""
        with self._job_lock(job_id):
            with self._session() as db:
                job = JobRepository(db, include_deleted=True).get_by_id(job_id, for_update=True)
                if not has_failed_stage(load_stage_map(job.stage_history)):
                    job.partial_status = PartialStatus.COMPLETE.value
                db.flush()
                return JobRecord.from_model(job)

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    def publish(self, job_id: str) -> JobRecord:
        with self._session() as db:
            job = JobRepository(db).get_by_id(job_id)
            if not job.share_token:
                job.share_token = secrets.token_urlsafe(16)
            job.is_public = True
            db.flush()
            return JobRecord.from_model(job)

    def unpublish(self, job_id: str) -> JobRecord:
        return self.update_job(job_id, is_public=False)

    def get_shared(self, token: str) -> JobRecord:
        with self._session() as db:
            job = JobRepository(db).get_by_share_token(token)
            if job is None:
                raise ShareNotFoundError(token)
            return JobRecord.from_model(job)

    # ------------------------------------------------------------------
    # Chat history
    # ------------------------------------------------------------------

    def chat_history(self, job_id: str, limit: Optional[int] = None) -> List[dict]:
        with self._session() as db:
            JobRepository(db).get_by_id(job_id)
            return [_chat_to_dict(m) for m in ChatRepository(db).list_for_job(job_id, limit)]

    def append_chat(
        self,
        job_id: str,
        role: str,
        content: str,
        context_files: Optional[list] = None,
        graph_context: Optional[dict] = None,
    ) -> dict:
        with self._session() as db:
            message = ChatRepository(db).add(job_id, role, content, context_files, graph_context)
            return _chat_to_dict(message)


def _chat_to_dict(message: ChatMessage) -> dict:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "context_files": message.context_files,
        "graph_context": message.graph_context,
        "created_at": message.created_at,
    }


def _check_status_order(current: str, target) -> None:
    target = JobStatus(target)
    current = JobStatus(current)
    if current in TERMINAL_STATUSES and target not in TERMINAL_STATUSES:
        raise ValueError(f"Job status cannot move from {current.value} to {target.value}")
    if current in PIPELINE_STATUS_RANK and target in PIPELINE_STATUS_RANK:
        if PIPELINE_STATUS_RANK[target] < PIPELINE_STATUS_RANK[current]:
            raise ValueError(f"Job status cannot move from {current.value} to {target.value}")
