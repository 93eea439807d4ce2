"""Clients for the sandbox control plane, the agent runtime and GitHub."""

from .base import (
    AgentActivity,
    AgentGateway,
    AnalysisResult,
    ChatResult,
    DiagramResult,
    ExecResult,
    OwnershipResolver,
    SandboxGateway,
    SandboxHandle,
)
from .agent import HttpAgentGateway
from .ownership import GitHubOwnershipResolver
from .sandbox import HttpSandboxGateway

__all__ = [
    "AgentActivity",
    "AgentGateway",
    "AnalysisResult",
    "ChatResult",
    "DiagramResult",
    "ExecResult",
    "OwnershipResolver",
    "SandboxGateway",
    "SandboxHandle",
    "HttpAgentGateway",
    "GitHubOwnershipResolver",
    "HttpSandboxGateway",
]
