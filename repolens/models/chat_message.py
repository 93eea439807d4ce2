"""Chat history for interactive questions about an analyzed repository."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base


class ChatMessage(Base):
    """One turn of a job's conversation. Role is ``user`` or ``assistant``."""

    __tablename__ = "job_chats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(50), ForeignKey("analysis_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    # Files the agent opened while answering (assistant turns only)
    context_files = Column(JSON, nullable=True)
    # Diagram selection the user asked about, if any
    graph_context = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    job = relationship("AnalysisJob", back_populates="chats")
