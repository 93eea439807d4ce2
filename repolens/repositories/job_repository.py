"""Job and chat repositories.

Own the query logic for ``analysis_jobs`` and ``job_chats``. Read queries
exclude soft-deleted jobs unless the caller asks for them explicitly.
"""

from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Query

from ..exceptions import JobNotFoundError
from ..models import AnalysisJob, ChatMessage
from .base import BaseRepository


class JobRepository(BaseRepository[AnalysisJob]):
    model_class = AnalysisJob
    not_found_error = JobNotFoundError

    def __init__(self, db, include_deleted: bool = False):
        super().__init__(db)
        self.include_deleted = include_deleted

    def _base_query(self) -> Query:
        query = self.db.query(AnalysisJob)
        if not self.include_deleted:
            query = query.filter(AnalysisJob.deleted.is_(False))
        return query

    def list_recent(self, limit: int = 20, repo_url: Optional[str] = None) -> List[AnalysisJob]:
        query = self._base_query()
        if repo_url:
            query = query.filter(AnalysisJob.repo_url == repo_url)
        return query.order_by(AnalysisJob.created_at.desc()).limit(limit).all()

    def get_by_share_token(self, token: str) -> Optional[AnalysisJob]:
        return (
            self._base_query()
            .filter(AnalysisJob.share_token == token, AnalysisJob.is_public.is_(True))
            .first()
        )

    def count(self) -> int:
        return self._base_query().with_entities(func.count(AnalysisJob.id)).scalar() or 0


class ChatRepository:
    """Conversation history for a job, oldest first."""

    def __init__(self, db):
        self.db = db

    def list_for_job(self, job_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        query = (
            self.db.query(ChatMessage)
            .filter(ChatMessage.job_id == job_id)
            .order_by(ChatMessage.id.asc())
        )
        rows = query.all()
        if limit is not None and len(rows) > limit:
            rows = rows[-limit:]
        return rows

    def add(
        self,
        job_id: str,
        role: str,
        content: str,
        context_files: Optional[list] = None,
        graph_context: Optional[dict] = None,
    ) -> ChatMessage:
        message = ChatMessage(
            job_id=job_id,
            role=role,
            content=content,
            context_files=context_files,
            graph_context=graph_context,
        )
        self.db.add(message)
        self.db.flush()
        return message
