"""Interactive Q&A against a finished analysis.

The agent answers with the repository mounted in the job's sandbox, so a
chat turn resumes a paused sandbox, makes sure the clone is still there,
and then (re)starts the idle countdown that pauses it again.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from ..exceptions import (
    AgentError,
    JobNotReadyError,
    SandboxError,
    SandboxUnavailableError,
)
from ..gateways.base import AgentGateway, SandboxGateway
from ..gateways.circuit_breaker import CircuitBreakerOpen
from ..models.analysis_job import JobStatus
from ..pipeline.idle_reclaimer import IdleReclaimer
from ..repositories.job_store import JobStore
from ..schemas.chat import ChatResponse

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 2000
HISTORY_LIMIT = 20


class ChatService:
    """Answers questions about a completed job's repository."""

    def __init__(
        self,
        store: JobStore,
        sandbox: SandboxGateway,
        agent: AgentGateway,
        reclaimer: IdleReclaimer,
    ):
        self.store = store
        self.sandbox = sandbox
        self.agent = agent
        self.reclaimer = reclaimer

    async def ask(
        self,
        job_id: str,
        message: str,
        graph_context: Optional[Dict[str, Any]] = None,
    ) -> ChatResponse:
        """Ask one question and persist the exchange.

        Raises:
            JobNotFoundError: no such job.
            JobNotReadyError: the job has not completed.
            SandboxUnavailableError: the sandbox or agent could not serve the turn.
        """
        job = await asyncio.to_thread(self.store.get, job_id)
        if job.status != JobStatus.COMPLETED.value:
            raise JobNotReadyError(job_id, job.status)
        if not job.sandbox_name:
            raise SandboxUnavailableError("Job has no sandbox")

        self.reclaimer.cancel(job_id)
        try:
            handle = await self.sandbox.resume(job.sandbox_name)
            if job.sandbox_paused:
                await asyncio.to_thread(self.store.set_sandbox_paused, job_id, False)
            reason = await self.sandbox.ensure_repo_present(handle, job.repo_url)
            if reason is not None:
                raise SandboxUnavailableError(f"Repository unavailable in sandbox: {reason}")

            history = await asyncio.to_thread(self.store.chat_history, job_id, HISTORY_LIMIT)
            context = (job.markdown_content or "")[:MAX_CONTEXT_CHARS]
            result = await self.agent.chat(handle, history, message, context, graph_context)
        except (SandboxError, AgentError, CircuitBreakerOpen, TimeoutError) as e:
            logger.warning("Chat turn failed for job %s: %s", job_id, e)
            raise SandboxUnavailableError(f"Chat is unavailable: {str(e) or 'timed out'}") from e
        finally:
            self.reclaimer.touch(job_id)

        await asyncio.to_thread(
            self.store.append_chat, job_id, "user", message, None, graph_context
        )
        await asyncio.to_thread(
            self.store.append_chat, job_id, "assistant", result.response, result.context_files, None
        )
        logger.info("Chat answered for job %s (%d context files)", job_id, len(result.context_files))
        return ChatResponse(response=result.response, context_files=result.context_files)

    async def history(self, job_id: str) -> List[dict]:
        return await asyncio.to_thread(self.store.chat_history, job_id)
