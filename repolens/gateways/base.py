"""Contracts for the external collaborators the pipeline drives.

The orchestrator only sees these abstract classes. Production wiring uses
the HTTP implementations in this package; tests substitute in-memory fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..schemas.ownership import OwnershipData


@dataclass(frozen=True)
class SandboxHandle:
    """Addressable, running sandbox."""
    name: str
    url: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class AgentActivity:
    """Intermediate signal from a running agent call.

    ``kind`` is ``thinking`` (streamed text), ``tool_use`` (a tool name)
    or ``progress`` (milestone message).
    """
    kind: str
    message: str


ActivityCallback = Optional[Callable[[AgentActivity], None]]
ProgressCallback = Optional[Callable[[int, int, str], None]]


@dataclass
class AnalysisResult:
    markdown: str
    highlevel: Optional[str] = None
    technical: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DiagramResult:
    patterns: Dict[str, Any]
    react_flow_data: Dict[str, Any]

    @property
    def architecture_nodes(self) -> List[Dict[str, Any]]:
        return list((self.react_flow_data.get("architecture") or {}).get("nodes") or [])


@dataclass
class ChatResult:
    response: str
    context_files: List[str] = field(default_factory=list)


class SandboxGateway(ABC):
    """Isolated execution environment that hosts the cloned repository."""

    @abstractmethod
    async def acquire(self, name: str) -> SandboxHandle:
        """Provision a fresh sandbox. Raises ``SandboxError`` when unavailable."""

    @abstractmethod
    async def resume(self, name: str) -> SandboxHandle:
        """Reactivate a paused sandbox, restoring it if it scaled to zero."""

    @abstractmethod
    async def exec(self, handle: SandboxHandle, command: str, timeout: Optional[float] = None) -> ExecResult:
        """Run a shell command inside the sandbox with a bounded timeout."""

    @abstractmethod
    async def ensure_repo_present(self, handle: SandboxHandle, repo_url: str) -> Optional[str]:
        """Make sure the repository is cloned at the fixed path.

        Returns ``None`` on success, otherwise a reason string after the
        bounded retries are exhausted.
        """

    @abstractmethod
    async def pause(self, handle: SandboxHandle) -> None:
        """Release compute but keep the filesystem. Must not raise."""

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Destroy the sandbox permanently."""


class AgentGateway(ABC):
    """LLM agent operating on a sandbox through its own tool loop."""

    @abstractmethod
    async def analyze(
        self, handle: SandboxHandle, job_id: str, on_activity: ActivityCallback = None
    ) -> AnalysisResult:
        ...

    @abstractmethod
    async def diagram(
        self, handle: SandboxHandle, job_id: str, on_activity: ActivityCallback = None
    ) -> DiagramResult:
        ...

    @abstractmethod
    async def chat(
        self,
        handle: SandboxHandle,
        history: List[Dict[str, str]],
        question: str,
        context: Optional[str] = None,
        graph_context: Optional[Dict[str, Any]] = None,
    ) -> ChatResult:
        ...


class OwnershipResolver(ABC):
    """Ranks human contributors of a repository."""

    @abstractmethod
    async def resolve(
        self,
        repo_url: str,
        architecture_nodes: Optional[List[Dict[str, Any]]] = None,
        on_progress: ProgressCallback = None,
    ) -> OwnershipData:
        """Return ranked owners. Zero contributors is an empty result, not an error.

        Raises:
            OwnershipLookupError: when the hosting API cannot be queried.
        """
