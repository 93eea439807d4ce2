"""Pydantic schemas for chat and sandbox exploration."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=8000)
    graph_context: Optional[Dict[str, Any]] = None


class ChatResponse(BaseModel):
    response: str
    context_files: List[str] = Field(default_factory=list)


class ChatMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    role: str
    content: str
    context_files: Optional[List[str]] = None
    graph_context: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class ChatHistoryResponse(BaseModel):
    job_id: str
    messages: List[ChatMessageResponse]


class ExploreRequest(BaseModel):
    """One exploration action against the cloned repository.

    ``read`` needs ``path``; ``glob`` needs ``pattern``; ``grep`` needs
    ``content`` and accepts an optional ``pattern`` to filter file names.
    """
    action: Literal["read", "glob", "grep"]
    path: Optional[str] = Field(default=None, max_length=1000)
    pattern: Optional[str] = Field(default=None, max_length=200)
    content: Optional[str] = Field(default=None, max_length=500)


class ExploreResponse(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
