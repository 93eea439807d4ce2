"""Pydantic schemas for jobs, retries and their projections."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..pipeline.stages import STAGE_ORDER, StageMap, StageRecord, StageStatus, load_stage_map


class JobCreate(BaseModel):
    """Payload for submitting a repository."""
    repo_url: str = Field(..., min_length=1, max_length=500)
    content_style: str = Field(default="overview", max_length=50)

    @field_validator("repo_url")
    @classmethod
    def strip_url(cls, v: str) -> str:
        return v.strip()


class JobAccepted(BaseModel):
    job_id: str
    status: str


class JobRecord(BaseModel):
    """Detached snapshot of a job row, as returned by ``JobStore``."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    repo_url: str
    content_style: str = "overview"
    status: str
    error_message: Optional[str] = None
    partial_status: Optional[str] = None
    sandbox_name: Optional[str] = None
    sandbox_paused: bool = False
    markdown_content: Optional[str] = None
    analysis_context: Optional[Dict[str, Any]] = None
    react_flow_data: Optional[Dict[str, Any]] = None
    ownership_data: Optional[Dict[str, Any]] = None
    export_paths: Optional[Dict[str, str]] = None
    stages: StageMap = Field(default_factory=dict)
    is_public: bool = False
    share_token: Optional[str] = None
    deleted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, job) -> "JobRecord":
        record = cls.model_validate(job)
        record.stages = load_stage_map(job.stage_history)
        return record


class JobSummary(BaseModel):
    """List view of a job."""
    id: str
    repo_url: str
    status: str
    partial_status: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobResponse(BaseModel):
    """Full job projection for polling clients."""
    id: str
    repo_url: str
    content_style: str
    status: str
    error_message: Optional[str] = None
    partial_status: Optional[str] = None
    sandbox_name: Optional[str] = None
    sandbox_paused: bool = False
    markdown_content: Optional[str] = None
    analysis_context: Optional[Dict[str, Any]] = None
    react_flow_data: Optional[Dict[str, Any]] = None
    ownership_data: Optional[Dict[str, Any]] = None
    export_paths: Optional[Dict[str, str]] = None
    stage_history: Dict[str, StageRecord]
    is_public: bool = False
    share_token: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobResponse":
        data = record.model_dump(exclude={"stages", "deleted"})
        data["stage_history"] = {name.value: record.stages[name] for name in STAGE_ORDER}
        return cls(**data)


class SharedJobResponse(BaseModel):
    """Public projection served under a share token. No sandbox details."""
    id: str
    repo_url: str
    status: str
    partial_status: Optional[str] = None
    markdown_content: Optional[str] = None
    analysis_context: Optional[Dict[str, Any]] = None
    react_flow_data: Optional[Dict[str, Any]] = None
    ownership_data: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class StageProgress(BaseModel):
    stage: str
    status: StageStatus
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    skip_reason: Optional[str] = None


class ProgressResponse(BaseModel):
    job_id: str
    status: str
    partial_status: Optional[str] = None
    current_stage: Optional[str] = None
    percent_complete: int
    stages: List[StageProgress]
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, record: JobRecord) -> "ProgressResponse":
        stages = []
        current = None
        done = 0
        for name in STAGE_ORDER:
            rec = record.stages[name]
            stages.append(StageProgress(
                stage=name.value,
                status=rec.status,
                duration_ms=rec.duration_ms,
                error=rec.error,
                skip_reason=rec.skip_reason,
            ))
            if rec.status in (StageStatus.COMPLETED, StageStatus.SKIPPED):
                done += 1
            if rec.status == StageStatus.IN_PROGRESS and current is None:
                current = name.value
        return cls(
            job_id=record.id,
            status=record.status,
            partial_status=record.partial_status,
            current_stage=current,
            percent_complete=round(done * 100 / len(STAGE_ORDER)),
            stages=stages,
            error_message=record.error_message,
        )


class RetryRequest(BaseModel):
    stage: str = Field(..., min_length=1)


class RetryAccepted(BaseModel):
    message: str
    stage: str


class ShareResponse(BaseModel):
    job_id: str
    is_public: bool
    share_token: Optional[str] = None


class SandboxDeleteResponse(BaseModel):
    success: bool
    message: str
