"""Pydantic schemas for API validation and event payloads."""

from .job import (
    JobCreate,
    JobAccepted,
    JobRecord,
    JobSummary,
    JobResponse,
    SharedJobResponse,
    ProgressResponse,
    RetryRequest,
    RetryAccepted,
    ShareResponse,
    SandboxDeleteResponse,
)
from .chat import (
    ChatRequest,
    ChatResponse,
    ChatMessageResponse,
    ChatHistoryResponse,
    ExploreRequest,
    ExploreResponse,
)
from .ownership import OwnerInfo, ComponentOwnership, OwnershipData

__all__ = [
    "JobCreate",
    "JobAccepted",
    "JobRecord",
    "JobSummary",
    "JobResponse",
    "SharedJobResponse",
    "ProgressResponse",
    "RetryRequest",
    "RetryAccepted",
    "ShareResponse",
    "SandboxDeleteResponse",
    "ChatRequest",
    "ChatResponse",
    "ChatMessageResponse",
    "ChatHistoryResponse",
    "ExploreRequest",
    "ExploreResponse",
    "OwnerInfo",
    "ComponentOwnership",
    "OwnershipData",
]
