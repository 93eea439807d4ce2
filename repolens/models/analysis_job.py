"""Analysis job model: one repository analysis and everything it produced."""

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Index, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base


class JobStatus(str, Enum):
    """Coarse job lifecycle.

    queued -> cloning -> analyzing -> generating -> completed | failed.
    ``destroyed`` is reached only by explicit sandbox deletion.
    """
    QUEUED = "queued"
    CLONING = "cloning"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    DESTROYED = "destroyed"
    GENERATING_PODCAST = "generating_podcast"


# Order used to keep pipeline status updates monotonic.
PIPELINE_STATUS_RANK = {
    JobStatus.QUEUED: 0,
    JobStatus.CLONING: 1,
    JobStatus.ANALYZING: 2,
    JobStatus.GENERATING: 3,
    JobStatus.COMPLETED: 4,
    JobStatus.FAILED: 4,
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DESTROYED})


class AnalysisJob(Base):
    """
    A single analysis run over a repository.

    ``stage_history`` holds the per-stage records as JSON keyed by stage
    name. It is only ever written through ``JobStore.update_stage`` which
    merges one stage at a time.
    """

    __tablename__ = "analysis_jobs"
    __table_args__ = (
        Index("ix_analysis_jobs_created_at", "created_at"),
        Index("ix_analysis_jobs_share_token", "share_token", unique=True),
    )

    # Primary key (UUID format)
    id = Column(String(50), primary_key=True)

    repo_url = Column(Text, nullable=False)
    content_style = Column(String(50), nullable=False, default="overview")

    # Lifecycle
    status = Column(String(30), nullable=False, default=JobStatus.QUEUED.value)
    error_message = Column(Text, nullable=True)
    partial_status = Column(String(20), nullable=True)

    # Sandbox
    sandbox_name = Column(String(100), nullable=True)
    sandbox_paused = Column(Boolean, nullable=False, default=False)

    # Artifacts
    markdown_content = Column(Text, nullable=True)
    analysis_context = Column(JSON, nullable=True)
    react_flow_data = Column(JSON, nullable=True)
    ownership_data = Column(JSON, nullable=True)
    export_paths = Column(JSON, nullable=True)

    stage_history = Column(JSON, nullable=True)

    # Sharing
    is_public = Column(Boolean, nullable=False, default=False)
    share_token = Column(String(64), nullable=True)

    # Soft delete
    deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    chats = relationship(
        "ChatMessage",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="ChatMessage.id",
    )
