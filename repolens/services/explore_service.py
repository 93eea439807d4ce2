"""Read-only exploration of a job's cloned repository.

Three actions run as shell commands inside the sandbox:

- ``read``: print one file. The path must resolve inside the repository.
- ``glob``: find files by name pattern.
- ``grep``: list files containing a string, optionally filtered by name.

Every user value is shell-quoted. Exploration is only offered while the
pipeline is not using the sandbox (``sandbox_paused``); the sandbox is
resumed for the call and paused again afterwards.
"""

import asyncio
import logging
import posixpath
import shlex
from typing import List, Optional

from ..exceptions import SandboxError, SandboxNotPausedError, SandboxUnavailableError, ValidationError
from ..gateways.base import SandboxGateway, SandboxHandle
from ..repositories.job_store import JobStore
from ..schemas.chat import ExploreRequest, ExploreResponse

logger = logging.getLogger(__name__)

MAX_RESULTS = 50


def resolve_repo_path(path: str, repo_path: str = "/repo") -> str:
    """Map *path* to an absolute path under *repo_path*.

    Raises:
        ValidationError: empty path, ``..`` segments, or a path outside the repository.
    """
    raw = (path or "").strip()
    if not raw:
        raise ValidationError("path is required", field="path")
    if "\x00" in raw or ".." in raw.split("/"):
        raise ValidationError("path must not contain '..'", field="path")

    root = repo_path.rstrip("/") or "/"
    candidate = raw if raw.startswith("/") else posixpath.join(root, raw)
    resolved = posixpath.normpath(candidate)
    if resolved != root and not resolved.startswith(root + "/"):
        raise ValidationError(f"path must be inside {root}", field="path")
    return resolved


def _lines(output: str) -> List[str]:
    return [line for line in output.splitlines() if line.strip()][:MAX_RESULTS]


class ExploreService:
    def __init__(self, store: JobStore, sandbox: SandboxGateway, repo_path: str = "/repo"):
        self.store = store
        self.sandbox = sandbox
        self.repo_path = repo_path

    def build_command(self, request: ExploreRequest) -> str:
        root = shlex.quote(self.repo_path)
        if request.action == "read":
            return f"cat {shlex.quote(resolve_repo_path(request.path, self.repo_path))}"

        if request.action == "glob":
            if not request.pattern:
                raise ValidationError("pattern is required for glob", field="pattern")
            return (
                f"find {root} -name {shlex.quote(request.pattern)} "
                f"-not -path '*/.git/*' | head -{MAX_RESULTS}"
            )

        if not request.content:
            raise ValidationError("content is required for grep", field="content")
        include = f" --include={shlex.quote(request.pattern)}" if request.pattern else ""
        return (
            f"grep -rl --exclude-dir=.git{include} -- {shlex.quote(request.content)} {root} "
            f"| head -{MAX_RESULTS}"
        )

    async def explore(self, job_id: str, request: ExploreRequest) -> ExploreResponse:
        job = await asyncio.to_thread(self.store.get, job_id)
        if not job.sandbox_paused or not job.sandbox_name:
            raise SandboxNotPausedError(job_id, "explore")

        command = self.build_command(request)
        handle: Optional[SandboxHandle] = None
        try:
            handle = await self.sandbox.resume(job.sandbox_name)
            reason = await self.sandbox.ensure_repo_present(handle, job.repo_url)
            if reason is not None:
                return ExploreResponse(success=False, error=f"Repository unavailable: {reason}")
            result = await self.sandbox.exec(handle, command)
        except SandboxError as e:
            logger.warning("Explore %s failed for job %s: %s", request.action, job_id, e)
            raise SandboxUnavailableError(f"Sandbox unavailable: {e}") from e
        finally:
            if handle is not None:
                await self.sandbox.pause(handle)

        if request.action == "read":
            if not result.ok:
                return ExploreResponse(success=False, error=(result.stderr or "File not found").strip())
            return ExploreResponse(success=True, data=result.stdout)

        # grep exits 1 when nothing matched; an empty list is a valid answer.
        return ExploreResponse(success=True, data=_lines(result.stdout))
