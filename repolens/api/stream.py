"""Live job events over server-sent events.

A client first receives the buffered events for the job, then every event
published after that, with no gap and no duplicate in between. A
``: keepalive`` comment is sent whenever nothing happened for a while so
proxies keep the connection open.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ..core.services import Services
from ..pipeline.event_bus import EventBus
from ..schemas.events import JobEvent, to_sse_frame
from .dependencies import get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["stream"])

KEEPALIVE_FRAME = ": keepalive\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def event_stream(
    bus: EventBus,
    job_id: str,
    keepalive_seconds: float = 15.0,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """Yield SSE frames for *job_id* until the client goes away."""
    loop = asyncio.get_running_loop()
    queue: "asyncio.Queue[JobEvent]" = asyncio.Queue()

    def enqueue(event: JobEvent) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    snapshot, unsubscribe = bus.open_stream(job_id, enqueue)
    logger.debug("Stream opened for job %s (%d replayed)", job_id, len(snapshot))
    try:
        for event in snapshot:
            yield to_sse_frame(event)
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield KEEPALIVE_FRAME
                continue
            yield to_sse_frame(event)
    finally:
        unsubscribe()
        logger.debug("Stream closed for job %s", job_id)


@router.get("/{job_id}/stream")
async def stream_job(job_id: str, request: Request, services: Services = Depends(get_services)):
    """Replay buffered events, then stream live ones as ``text/event-stream``."""
    await services.jobs.get(job_id)
    return StreamingResponse(
        event_stream(
            services.bus,
            job_id,
            keepalive_seconds=services.settings.stream_keepalive_seconds,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
