"""HTTP client for the sandbox control plane.

Endpoints used (relative to ``SANDBOX_API_URL``)::

    POST   /sandboxes                  create
    GET    /sandboxes/{name}           describe (404 when scaled to zero and reaped)
    PUT    /sandboxes/{name}/stop      pause, filesystem preserved
    DELETE /sandboxes/{name}           destroy
    POST   {sandbox_url}/process       run a command and wait for it

Control plane calls retry transient failures (connection errors, 5xx) with
exponential backoff. Command execution does not retry: a failed command is
reported to the caller as a non-zero ``ExecResult``.
"""

import asyncio
import logging
import shlex
from typing import Any, Optional

import httpx

from ..core.config import Settings
from ..exceptions import SandboxError
from .base import ExecResult, SandboxGateway, SandboxHandle

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds; exponential: 1s, 2s, 4s


class HttpSandboxGateway(SandboxGateway):
    """Sandbox gateway backed by the control plane REST API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.retry_base_delay = RETRY_BASE_DELAY

    def _require_config(self) -> None:
        if not self.settings.sandbox_api_url or not self.settings.sandbox_api_key:
            raise SandboxError("SANDBOX_API_URL and SANDBOX_API_KEY must be set to use sandboxes")

    async def _get_client(self) -> httpx.AsyncClient:
        self._require_config()
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.settings.sandbox_api_url,
                headers={"Authorization": f"Bearer {self.settings.sandbox_api_key}"},
                timeout=30.0,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _request_with_retry(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Execute a control plane request, retrying connection errors and 5xx.

        4xx responses are returned to the caller unchanged.
        """
        client = await self._get_client()
        last_exc: Optional[Exception] = None

        for attempt in range(MAX_RETRIES):
            try:
                resp = await client.request(method, path, **kwargs)
                if resp.status_code < 500:
                    return resp
                last_exc = httpx.HTTPStatusError(
                    f"Server error {resp.status_code}",
                    request=resp.request,
                    response=resp,
                )
            except (httpx.ConnectError, httpx.TimeoutException) as exc:
                last_exc = exc

            if attempt < MAX_RETRIES - 1:
                delay = self.retry_base_delay * (2 ** attempt)
                logger.warning(
                    "Sandbox request %s %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    method, path, attempt + 1, MAX_RETRIES, delay, last_exc,
                )
                await asyncio.sleep(delay)

        raise SandboxError(f"Sandbox control plane unavailable: {last_exc}") from last_exc

    @staticmethod
    def _handle_from(name: str, body: dict) -> SandboxHandle:
        metadata = body.get("metadata") or {}
        url = metadata.get("url") or body.get("url") or ""
        if not url:
            raise SandboxError(f"Sandbox '{name}' has no URL in its metadata")
        return SandboxHandle(name=name, url=url.rstrip("/"), metadata=metadata)

    async def acquire(self, name: str) -> SandboxHandle:
        payload = {
            "metadata": {"name": name},
            "spec": {
                "runtime": {
                    "image": self.settings.sandbox_image,
                    "memory": self.settings.sandbox_memory_mb,
                },
                "region": self.settings.sandbox_region,
            },
        }
        resp = await self._request_with_retry("POST", "/sandboxes", json=payload)
        if resp.status_code >= 400:
            raise SandboxError(f"Sandbox creation failed ({resp.status_code}): {resp.text[:200]}")
        handle = self._handle_from(name, resp.json())
        logger.info("Sandbox %s created", name)
        return handle

    async def resume(self, name: str) -> SandboxHandle:
        resp = await self._request_with_retry("GET", f"/sandboxes/{name}")
        if resp.status_code == 404:
            # Reaped after scaling to zero; bring up a fresh one under the same name.
            logger.info("Sandbox %s no longer exists, recreating", name)
            return await self.acquire(name)
        if resp.status_code >= 400:
            raise SandboxError(f"Sandbox resume failed ({resp.status_code}): {resp.text[:200]}")
        handle = self._handle_from(name, resp.json())
        logger.info("Sandbox %s resumed", name)
        return handle

    async def exec(self, handle: SandboxHandle, command: str, timeout: Optional[float] = None) -> ExecResult:
        timeout = timeout or self.settings.sandbox_exec_timeout_seconds
        client = await self._get_client()
        payload = {"command": command, "workingDir": "/", "waitForCompletion": True}
        try:
            resp = await asyncio.wait_for(
                client.post(f"{handle.url}/process", json=payload, timeout=timeout + 5),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise SandboxError(f"Command timed out after {timeout}s in sandbox {handle.name}") from None
        except httpx.HTTPError as e:
            raise SandboxError(f"Command execution failed in sandbox {handle.name}: {e}") from e

        if resp.status_code >= 400:
            raise SandboxError(f"Command execution rejected ({resp.status_code}): {resp.text[:200]}")
        body = resp.json()
        return ExecResult(
            exit_code=int(body.get("exitCode", body.get("exit_code", -1))),
            stdout=body.get("stdout") or body.get("logs") or "",
            stderr=body.get("stderr") or "",
        )

    async def ensure_repo_present(self, handle: SandboxHandle, repo_url: str) -> Optional[str]:
        repo_path = self.settings.repo_path
        check = await self.exec(handle, f"test -d {shlex.quote(repo_path + '/.git')} && echo present || echo missing")
        if check.ok and "present" in check.stdout:
            return None

        clone_cmd = (
            f"rm -rf {shlex.quote(repo_path)} && "
            f"git clone --depth 1 {shlex.quote(repo_url)} {shlex.quote(repo_path)}"
        )
        delay = self.settings.clone_backoff_seconds
        reason = "clone did not run"
        for attempt in range(1, self.settings.clone_max_attempts + 1):
            try:
                result = await self.exec(handle, clone_cmd)
            except SandboxError as e:
                reason = str(e)
            else:
                if result.ok:
                    logger.info("Cloned %s into %s (attempt %d)", repo_url, handle.name, attempt)
                    return None
                reason = f"git clone exited with code {result.exit_code}: {(result.stderr or result.stdout).strip()[:300]}"

            if attempt < self.settings.clone_max_attempts:
                logger.warning(
                    "Clone attempt %d/%d failed for %s, retrying in %.1fs: %s",
                    attempt, self.settings.clone_max_attempts, repo_url, delay, reason,
                )
                await asyncio.sleep(delay)
                delay *= 2

        logger.error("Giving up on cloning %s: %s", repo_url, reason)
        return reason

    async def pause(self, handle: SandboxHandle) -> None:
        try:
            resp = await self._request_with_retry("PUT", f"/sandboxes/{handle.name}/stop")
            if resp.status_code >= 400 and resp.status_code != 404:
                logger.warning("Sandbox %s pause returned %s", handle.name, resp.status_code)
                return
            logger.info("Sandbox %s paused", handle.name)
        except Exception as e:
            logger.warning("Failed to pause sandbox %s: %s", handle.name, e)

    async def delete(self, name: str) -> None:
        resp = await self._request_with_retry("DELETE", f"/sandboxes/{name}")
        if resp.status_code >= 400 and resp.status_code != 404:
            raise SandboxError(f"Sandbox deletion failed ({resp.status_code}): {resp.text[:200]}")
        logger.info("Sandbox %s deleted", name)
