"""Chat and repository exploration for finished jobs."""

from fastapi import APIRouter, Depends

from ..core.services import Services
from ..schemas.chat import (
    ChatHistoryResponse,
    ChatMessageResponse,
    ChatRequest,
    ChatResponse,
    ExploreRequest,
    ExploreResponse,
)
from .dependencies import get_services

router = APIRouter(prefix="/api/jobs", tags=["chat"])


@router.post("/{job_id}/chat", response_model=ChatResponse)
async def ask(job_id: str, request: ChatRequest, services: Services = Depends(get_services)):
    """Ask a question about the analysed repository. The job must be completed."""
    return await services.chat.ask(job_id, request.message, request.graph_context)


@router.get("/{job_id}/chat", response_model=ChatHistoryResponse)
async def chat_history(job_id: str, services: Services = Depends(get_services)):
    messages = await services.chat.history(job_id)
    return ChatHistoryResponse(
        job_id=job_id,
        messages=[ChatMessageResponse.model_validate(m) for m in messages],
    )


@router.post("/{job_id}/explore", response_model=ExploreResponse)
async def explore(job_id: str, request: ExploreRequest, services: Services = Depends(get_services)):
    """Read a file, glob by name or grep by content inside the cloned repository."""
    return await services.explore.explore(job_id, request)
