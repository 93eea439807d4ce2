"""Custom exception hierarchy for RepoLens.

Two families live here:

- ``RepoLensException`` subclasses are client-facing. The exception handler
  middleware renders them as structured JSON with their HTTP status.
- Gateway and pipeline errors (``SandboxError``, ``AgentError`` ...) never
  reach a client directly. The orchestrator catches them at the stage
  boundary and records them on the stage.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Job errors
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    JOB_NOT_READY = "JOB_NOT_READY"
    INVALID_REPOSITORY_URL = "INVALID_REPOSITORY_URL"

    # Stage errors
    STAGE_NOT_RETRYABLE = "STAGE_NOT_RETRYABLE"
    STAGE_PRECONDITION_FAILED = "STAGE_PRECONDITION_FAILED"

    # Sandbox errors
    SANDBOX_NOT_PAUSED = "SANDBOX_NOT_PAUSED"
    SANDBOX_UNAVAILABLE = "SANDBOX_UNAVAILABLE"
    SANDBOX_BUSY = "SANDBOX_BUSY"

    # Share links
    SHARE_NOT_FOUND = "SHARE_NOT_FOUND"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Database errors
    DATABASE_ERROR = "DATABASE_ERROR"

    # Rate limiting
    RATE_LIMITED = "RATE_LIMITED"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class RepoLensException(Exception):
    """
    Base exception for all client-facing RepoLens errors.

    Provides structured error responses with:
    - Human-readable message
    - Machine-readable error code
    - HTTP status code
    - Optional additional details
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for JSON response.

        Returns:
            Dictionary with error, message, and details fields
        """
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class JobNotFoundError(RepoLensException):
    """Job does not exist or was deleted."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Job not found: {job_id}",
            ErrorCode.JOB_NOT_FOUND,
            status_code=404,
            details={"job_id": job_id}
        )


class ShareNotFoundError(RepoLensException):
    """No public job is published under this token."""

    def __init__(self, token: str):
        super().__init__(
            "Shared analysis not found",
            ErrorCode.SHARE_NOT_FOUND,
            status_code=404,
            details={"token": token}
        )


class ValidationError(RepoLensException):
    """Validation failed for user input."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message,
            ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )


class InvalidRepositoryUrlError(RepoLensException):
    """Repository URL does not start with an accepted hosting prefix."""

    def __init__(self, repo_url: str, allowed: list[str]):
        super().__init__(
            f"Repository URL must start with one of: {', '.join(allowed)}",
            ErrorCode.INVALID_REPOSITORY_URL,
            status_code=400,
            details={"repo_url": repo_url, "allowed_prefixes": allowed}
        )


class StageNotRetryableError(RepoLensException):
    """Only supplementary stages can be retried individually."""

    def __init__(self, stage: str, retryable: list[str]):
        super().__init__(
            f"Stage '{stage}' cannot be retried. Retryable stages: {', '.join(retryable)}",
            ErrorCode.STAGE_NOT_RETRYABLE,
            status_code=400,
            details={"stage": stage, "retryable": retryable}
        )


class StagePreconditionError(RepoLensException):
    """A retry was requested for a stage that is not currently failed."""

    def __init__(self, job_id: str, stage: str, current_status: str):
        super().__init__(
            f"Stage '{stage}' is {current_status}; only failed stages can be retried",
            ErrorCode.STAGE_PRECONDITION_FAILED,
            status_code=409,
            details={"job_id": job_id, "stage": stage, "current_status": current_status}
        )


class SandboxBusyError(RepoLensException):
    """Another stage is running in the job's sandbox."""

    def __init__(self, job_id: str, running_stage: str):
        super().__init__(
            f"Stage '{running_stage}' is running; wait for it to finish before retrying",
            ErrorCode.SANDBOX_BUSY,
            status_code=409,
            details={"job_id": job_id, "running_stage": running_stage}
        )


class SandboxNotPausedError(RepoLensException):
    """The sandbox is in use and cannot be explored or deleted right now."""

    def __init__(self, job_id: str, action: str):
        super().__init__(
            f"Sandbox must be paused before it can be {action}",
            ErrorCode.SANDBOX_NOT_PAUSED,
            status_code=409,
            details={"job_id": job_id}
        )


class JobNotReadyError(RepoLensException):
    """The job has not reached the status an operation requires."""

    def __init__(self, job_id: str, status: str, required: str = "completed"):
        super().__init__(
            f"Job is {status}; this action requires a {required} job",
            ErrorCode.JOB_NOT_READY,
            status_code=409,
            details={"job_id": job_id, "status": status}
        )


class SandboxUnavailableError(RepoLensException):
    """Interactive request could not reach the job's sandbox."""

    def __init__(self, message: str):
        super().__init__(
            message,
            ErrorCode.SANDBOX_UNAVAILABLE,
            status_code=503,
        )


class DatabaseError(RepoLensException):
    """Database operation failed."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)

        super().__init__(
            message,
            ErrorCode.DATABASE_ERROR,
            status_code=500,
            details=details
        )


# ---------------------------------------------------------------------------
# Pipeline and gateway errors (caught at stage boundaries)
# ---------------------------------------------------------------------------


class InvalidStageTransition(Exception):
    """A stage record was asked to move along an edge the state machine forbids."""

    def __init__(self, stage: str, current: str, target: str):
        self.stage = stage
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition for stage '{stage}': {current} -> {target}")


class SandboxError(Exception):
    """Sandbox control plane or command execution failed."""


class RepositoryMaterializationError(SandboxError):
    """The repository could not be cloned into the sandbox."""


class AgentErrorCode(str, Enum):
    MISSING_CONFIGURATION = "MISSING_CONFIGURATION"
    SANDBOX_NOT_AVAILABLE = "SANDBOX_NOT_AVAILABLE"
    SANDBOX_METADATA_MISSING = "SANDBOX_METADATA_MISSING"
    AGENT_NO_RESPONSE = "AGENT_NO_RESPONSE"


class AgentError(Exception):
    """Agent invocation failed with a typed reason."""

    def __init__(self, code: AgentErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)


class OwnershipLookupError(Exception):
    """The hosting API refused or failed a contributor lookup."""


class ExportError(Exception):
    """Artifacts could not be written to durable storage."""
