"""Database models."""

from .analysis_job import AnalysisJob, JobStatus
from .chat_message import ChatMessage

__all__ = ["AnalysisJob", "JobStatus", "ChatMessage"]
