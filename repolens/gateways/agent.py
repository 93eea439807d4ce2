"""Streaming client for the analysis agent.

The agent exposes ``POST {AGENT_URL}/analyze``, ``/diagram`` and ``/chat``.
Each responds with server-sent-event frames (``data: <json>``) while its
tool loop runs, and ends with a ``complete`` frame carrying the result::

    {"type": "text", "text": "..."}          streamed model output
    {"type": "tool", "name": "Read"}         a tool invocation
    {"type": "highlevel", "length": 1234}    system design written
    {"type": "technical", "length": 5678}    technical spec written
    {"type": "complete", ...}                terminal payload
    {"type": "error", "error": "..."}        agent-side failure

Every call is bounded by ``AGENT_TIMEOUT_SECONDS`` and goes through a
circuit breaker so an agent outage fails stages fast instead of stacking
fifteen-minute timeouts.
"""

import json
import logging
import re
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..core.config import Settings
from ..exceptions import AgentError, AgentErrorCode
from .base import (
    ActivityCallback,
    AgentActivity,
    AgentGateway,
    AnalysisResult,
    ChatResult,
    DiagramResult,
    SandboxHandle,
)
from .circuit_breaker import BreakerRegistry, run_with_timeout

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert software architect analyzing codebases. "
    "The repository is cloned at /repo. Use only Read, Glob and Grep. "
    "Be thorough but concise and focus on architecture, not implementation details."
)

ANALYSIS_PROMPT = (
    "Write a system design document for the repository at /repo in markdown, "
    "followed by a technical specification of its main modules."
)

DIAGRAM_PROMPT = (
    "Analyze the repository at /repo and output one JSON object inside a ```json fence with "
    "keys `patterns` {framework, architecture, keyModules} and `reactFlowData` "
    "{architecture: {nodes, edges}, dataFlow: {nodes, edges}}."
)

MAX_CHAT_CONTEXT_CHARS = 2000


# ---------------------------------------------------------------------------
# Output post-processing
# ---------------------------------------------------------------------------

_LEADING_CHATTER = [
    re.compile(r"^\s*(?:Here(?:'s| is| are)\b[^\n]*\n)", re.IGNORECASE),
    re.compile(r"^\s*(?:Sure|Certainly|Of course|Great|Okay|OK)[,!.][^\n]*\n", re.IGNORECASE),
    re.compile(r"^\s*(?:I(?:'ll| will| have|'ve)\b[^\n]*\n)", re.IGNORECASE),
    re.compile(r"^\s*(?:Let me\b[^\n]*\n)", re.IGNORECASE),
]

_TRAILING_CHATTER = [
    re.compile(r"\n[^\n]*\b(?:Let me know if|Feel free to|Hope this helps|If you(?:'d| would) like)\b[^\n]*\s*$",
               re.IGNORECASE),
    re.compile(r"\n\s*(?:Is there anything else[^\n]*)\s*$", re.IGNORECASE),
]


def clean_markdown(text: str) -> str:
    """Strip conversational preamble and sign-off lines and collapse blank runs."""
    cleaned = text.strip()
    changed = True
    while changed:
        changed = False
        for pattern in _LEADING_CHATTER:
            new = pattern.sub("", cleaned, count=1)
            if new != cleaned:
                cleaned, changed = new.lstrip(), True
        for pattern in _TRAILING_CHATTER:
            new = pattern.sub("", cleaned, count=1)
            if new != cleaned:
                cleaned, changed = new.rstrip(), True
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


_JSON_FENCE = re.compile(r"```json\s*\n(.*?)\n\s*```", re.DOTALL)


def extract_diagram(raw: str) -> DiagramResult:
    """Parse the diagram JSON from a fenced block, or the whole text.

    Raises:
        AgentError: when the output is empty or not a JSON object.
    """
    if not raw or not raw.strip():
        raise AgentError(
            AgentErrorCode.AGENT_NO_RESPONSE,
            "Diagram agent returned empty output",
        )
    match = _JSON_FENCE.search(raw)
    candidate = match.group(1) if match else raw.strip()
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise AgentError(
            AgentErrorCode.AGENT_NO_RESPONSE,
            f"Diagram agent returned invalid JSON: {e.msg}",
            details={"preview": raw[:200]},
        ) from e
    if not isinstance(data, dict):
        raise AgentError(AgentErrorCode.AGENT_NO_RESPONSE, "Diagram output is not a JSON object")

    return DiagramResult(
        patterns=data.get("patterns") or {},
        react_flow_data=data.get("reactFlowData") or data.get("react_flow_data") or {},
    )


# ---------------------------------------------------------------------------
# SSE frame parsing
# ---------------------------------------------------------------------------


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    """Yield decoded ``data:`` payloads from a line stream.

    Non-JSON data lines are logged and skipped. ``httpx``'s ``aiter_lines``
    already reassembles lines split across network chunks.
    """
    async for line in lines:
        if not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if not payload:
            continue
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed agent frame: %s", payload[:100])
            continue
        if isinstance(event, dict):
            yield event


class HttpAgentGateway(AgentGateway):
    """Agent gateway calling the remote agent runtime over HTTP."""

    def __init__(
        self,
        settings: Settings,
        breakers: Optional[BreakerRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.breakers = breakers or BreakerRegistry(
            failure_threshold=settings.agent_failure_threshold,
            cooldown_seconds=settings.agent_cooldown_seconds,
        )
        self._transport = transport

    def _require_config(self) -> None:
        if not self.settings.agent_url:
            raise AgentError(AgentErrorCode.MISSING_CONFIGURATION, "AGENT_URL must be set")
        if not self.settings.agent_api_key:
            raise AgentError(AgentErrorCode.MISSING_CONFIGURATION, "AGENT_API_KEY must be set")

    @staticmethod
    def _require_sandbox(handle: Optional[SandboxHandle]) -> str:
        if handle is None:
            raise AgentError(AgentErrorCode.SANDBOX_NOT_AVAILABLE, "Sandbox is not available for this job")
        if not handle.name:
            raise AgentError(AgentErrorCode.SANDBOX_METADATA_MISSING, "Sandbox handle has no name")
        return handle.name

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.agent_api_key}",
            "X-Anthropic-Key": self.settings.anthropic_api_key,
        }

    async def _stream(self, endpoint: str, body: Dict[str, Any], on_activity: ActivityCallback) -> Dict[str, Any]:
        """POST to the agent and fold its event stream into a result dict.

        Returns ``{"complete": <terminal payload or {}>, "raw": <streamed text>,
        "tools": [<tool names>]}``.
        """
        url = f"{self.settings.agent_url.rstrip('/')}/{endpoint}"
        raw_parts: List[str] = []
        tools: List[str] = []
        complete: Dict[str, Any] = {}

        def notify(kind: str, message: str) -> None:
            if on_activity is not None:
                on_activity(AgentActivity(kind=kind, message=message))

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None), transport=self._transport) as client:
                async with client.stream("POST", url, json=body, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        text = (await resp.aread()).decode(errors="replace")
                        raise AgentError(
                            AgentErrorCode.AGENT_NO_RESPONSE,
                            f"Agent request failed: {resp.status_code} {text[:200]}",
                        )
                    async for event in iter_sse_events(resp.aiter_lines()):
                        kind = event.get("type")
                        if kind == "text":
                            text = str(event.get("text", ""))
                            raw_parts.append(text)
                            notify("thinking", text)
                        elif kind == "tool":
                            name = str(event.get("name", "tool"))
                            tools.append(name)
                            notify("tool_use", name)
                        elif kind == "highlevel":
                            notify("progress", f"Generated system design ({event.get('length', 0)} chars)")
                        elif kind == "technical":
                            notify("progress", f"Generated technical spec ({event.get('length', 0)} chars)")
                        elif kind == "complete":
                            complete = event
                        elif kind == "error":
                            raise AgentError(
                                AgentErrorCode.AGENT_NO_RESPONSE,
                                f"Agent error: {event.get('error', 'unknown error')}",
                            )
        except httpx.HTTPError as e:
            raise AgentError(AgentErrorCode.AGENT_NO_RESPONSE, f"Agent request failed: {e}") from e

        return {"complete": complete, "raw": "".join(raw_parts), "tools": tools}

    async def _call(self, endpoint: str, body: Dict[str, Any], on_activity: ActivityCallback) -> Dict[str, Any]:
        self._require_config()
        breaker = self.breakers.get(f"agent:{endpoint}")
        return await run_with_timeout(
            lambda: self._stream(endpoint, body, on_activity),
            timeout=self.settings.agent_timeout_seconds,
            breaker=breaker,
            label=f"agent {endpoint}",
        )

    async def analyze(self, handle, job_id, on_activity=None) -> AnalysisResult:
        sandbox_name = self._require_sandbox(handle)
        result = await self._call("analyze", {
            "jobId": job_id,
            "sandboxName": sandbox_name,
            "prompt": ANALYSIS_PROMPT,
            "systemPrompt": SYSTEM_PROMPT,
            "model": self.settings.agent_model,
        }, on_activity)

        complete = result["complete"]
        markdown = (
            complete.get("markdown") or complete.get("highlevel")
            or complete.get("technical") or result["raw"]
        )
        markdown = clean_markdown(markdown or "")
        if not markdown:
            raise AgentError(AgentErrorCode.AGENT_NO_RESPONSE, "Analysis agent returned no markdown")

        context = complete.get("analysisContext") or complete.get("context") or {}
        return AnalysisResult(
            markdown=markdown,
            highlevel=complete.get("highlevel"),
            technical=complete.get("technical"),
            context=context if isinstance(context, dict) else {},
        )

    async def diagram(self, handle, job_id, on_activity=None) -> DiagramResult:
        sandbox_name = self._require_sandbox(handle)
        result = await self._call("diagram", {
            "jobId": job_id,
            "sandboxName": sandbox_name,
            "prompt": DIAGRAM_PROMPT,
            "systemPrompt": SYSTEM_PROMPT,
            "model": self.settings.agent_model,
        }, on_activity)
        raw = result["complete"].get("rawOutput") or result["raw"]
        return extract_diagram(raw)

    async def chat(self, handle, history, question, context=None, graph_context=None) -> ChatResult:
        sandbox_name = self._require_sandbox(handle)
        messages = [{"role": m["role"], "content": m["content"]} for m in history]
        messages.append({"role": "user", "content": question})
        result = await self._call("chat", {
            "sandboxName": sandbox_name,
            "messages": messages,
            "context": (context or "")[:MAX_CHAT_CONTEXT_CHARS] or None,
            "graphContext": graph_context,
            "model": self.settings.agent_model,
        }, None)

        complete = result["complete"]
        response = complete.get("response") or result["raw"]
        if not response or not response.strip():
            raise AgentError(
                AgentErrorCode.AGENT_NO_RESPONSE,
                "Chat agent did not return a response",
            )
        files = [str(f) for f in complete.get("contextFiles") or []]
        return ChatResult(response=response, context_files=list(dict.fromkeys(files)))
