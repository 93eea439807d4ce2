"""Data access repositories."""

from .base import BaseRepository
from .job_repository import JobRepository, ChatRepository
from .job_store import JobStore

__all__ = [
    "BaseRepository",
    "JobRepository",
    "ChatRepository",
    "JobStore",
]
