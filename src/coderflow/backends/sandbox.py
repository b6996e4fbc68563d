from __future__ import annotations

import asyncio
import os
import secrets
import time
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any, Generic, TypeVar

from coderflow.backends.base import TIMEOUT_EXIT_CODE, AgentError, AgentResult, AgentStartupError

T = TypeVar("T")

KILL_GRACE_SECONDS = 5.0


class ProvisionedSession(Generic[T]):
    """Lazily provisions one backing resource and shares it between callers.

    Concurrent first calls await the same in-flight provisioning. A failed
    attempt clears the in-flight marker so the next call starts over. ``kill``
    aborts in-flight provisioning, tears down a live resource, and bumps the
    generation so an aborted attempt is never handed out afterwards.
    """

    def __init__(
        self,
        factory: Callable[[], Awaitable[T]],
        teardown: Callable[[T], Awaitable[None]] | None = None,
        *,
        label: str = "session",
    ) -> None:
        self._factory = factory
        self._teardown = teardown
        self.label = label
        self._resource: T | None = None
        self._pending: asyncio.Task[T] | None = None
        self._generation = 0
        self.provision_count = 0

    @property
    def ready(self) -> bool:
        return self._resource is not None

    @property
    def provisioning(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def get(self) -> T:
        if self._resource is not None:
            return self._resource
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._provision(self._generation))
        pending = self._pending
        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if pending.cancelled() and (current is None or not current.cancelling()):
                raise AgentStartupError(f"{self.label} provisioning aborted by kill()") from None
            raise

    async def _provision(self, generation: int) -> T:
        self.provision_count += 1
        try:
            resource = await self._factory()
        except AgentError:
            self._clear_pending(generation)
            raise
        except Exception as exc:
            self._clear_pending(generation)
            raise AgentStartupError(f"{self.label} provisioning failed: {exc}") from exc

        if generation != self._generation:
            if self._teardown is not None:
                await self._teardown(resource)
            raise AgentStartupError(f"{self.label} provisioning aborted by kill()")
        self._resource = resource
        self._pending = None
        return resource

    def _clear_pending(self, generation: int) -> None:
        if generation == self._generation:
            self._pending = None

    async def kill(self) -> None:
        self._generation += 1
        pending, self._pending = self._pending, None
        resource, self._resource = self._resource, None
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
        if resource is not None and self._teardown is not None:
            await self._teardown(resource)


class HostSandbox:
    """Runs agent commands as host subprocesses in a fixed directory and env."""

    def __init__(self, sandbox_id: str, cwd: Path, env: Mapping[str, str]) -> None:
        self.sandbox_id = sandbox_id
        self.cwd = cwd
        self.env = dict(env)
        self.last_activity: float | None = None
        self.current_command: list[str] | None = None
        self._processes: set[asyncio.subprocess.Process] = set()

    def activity(self) -> dict[str, Any]:
        return {
            "last_activity": self.last_activity,
            "idle_seconds": (
                time.monotonic() - self.last_activity if self.last_activity is not None else None
            ),
            "current_command": self.current_command,
            "is_running": bool(self._processes),
        }

    async def run(
        self,
        command: list[str],
        *,
        timeout_ms: int | None = None,
        input_text: str | None = None,
    ) -> AgentResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.cwd),
                env=self.env,
                stdin=asyncio.subprocess.PIPE if input_text is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentStartupError(f"Agent binary not found: {command[0]}") from exc

        self._processes.add(process)
        self.current_command = command
        self.last_activity = time.monotonic()
        payload = input_text.encode("utf-8") if input_text is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(payload),
                timeout=timeout_ms / 1000 if timeout_ms else None,
            )
        except TimeoutError:
            await self._terminate(process)
            return AgentResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout="",
                stderr=f"Command timeout after {timeout_ms}ms: {' '.join(command)[:200]}",
            )
        finally:
            self._processes.discard(process)
            self.current_command = None
            self.last_activity = time.monotonic()

        return AgentResult(
            exit_code=process.returncode if process.returncode is not None else 1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except ProcessLookupError:
            return
        except TimeoutError:
            process.kill()
            await process.wait()

    async def close(self) -> None:
        processes = list(self._processes)
        self._processes.clear()
        await asyncio.gather(*(self._terminate(process) for process in processes))


class HostSandboxProvider:
    def __init__(
        self,
        default_cwd: Path | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.default_cwd = default_cwd or Path.cwd()
        self.base_env = dict(base_env or {})

    async def create(
        self,
        envs: Mapping[str, str] | None = None,
        agent_type: str = "default",
        working_directory: Path | None = None,
    ) -> HostSandbox:
        sandbox_id = f"host-{agent_type}-{int(time.time()):x}-{secrets.token_hex(3)}"
        env = {**os.environ, **self.base_env, **dict(envs or {})}
        return HostSandbox(sandbox_id, working_directory or self.default_cwd, env)
