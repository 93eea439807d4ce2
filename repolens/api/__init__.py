"""API routes."""

from .jobs import router as jobs_router
from .stream import router as stream_router
from .chat import router as chat_router
from .share import router as share_router, public_router as share_public_router

__all__ = [
    "jobs_router",
    "stream_router",
    "chat_router",
    "share_router",
    "share_public_router",
]
