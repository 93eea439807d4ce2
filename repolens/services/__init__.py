"""Business logic services."""

from .chat_service import ChatService
from .explore_service import ExploreService
from .export_service import ArtifactExporter
from .job_service import JobService

__all__ = ["ArtifactExporter", "ChatService", "ExploreService", "JobService"]
