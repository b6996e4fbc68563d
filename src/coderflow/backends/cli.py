from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import structlog

from coderflow.backends.base import AgentAdapter, AgentResult, CallOptions
from coderflow.backends.sandbox import HostSandbox, HostSandboxProvider, ProvisionedSession
from coderflow.config import CoderConfig

logger = structlog.get_logger()

AGENT_ALIASES = {
    "claude": "claude",
    "claude-code": "claude",
    "codex": "codex",
    "codex-cli": "codex",
    "openai": "codex",
    "gemini": "gemini",
    "gemini-cli": "gemini",
}


def resolve_agent_name(name: str) -> str:
    normalized = (name or "").strip().lower()
    resolved = AGENT_ALIASES.get(normalized)
    if resolved is None:
        raise ValueError(f"Unsupported agent backend: {name!r}")
    return resolved


class CliAgent(AgentAdapter):
    """Drives a coding-agent CLI as a host subprocess, one prompt per call."""

    def __init__(
        self,
        agent_name: str,
        *,
        cwd: Path,
        config: CoderConfig,
        secrets: Mapping[str, str] | None = None,
        provider: HostSandboxProvider | None = None,
        binary: str | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.name = resolve_agent_name(agent_name)
        self.cwd = cwd
        self.config = config
        self.binary = binary or self.name
        self.event_hook = event_hook
        self._provider = provider or HostSandboxProvider(default_cwd=cwd)
        self._secrets = dict(secrets or {})
        self._session: ProvisionedSession[HostSandbox] = ProvisionedSession(
            self._create_sandbox,
            self._close_sandbox,
            label=f"{self.name} sandbox",
        )

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    async def _create_sandbox(self) -> HostSandbox:
        sandbox = await self._provider.create(
            self._secrets, agent_type=self.name, working_directory=self.cwd
        )
        self._emit({"event": "sandbox_created", "agent": self.name, "sandbox": sandbox.sandbox_id})
        return sandbox

    @staticmethod
    async def _close_sandbox(sandbox: HostSandbox) -> None:
        await sandbox.close()

    def _model(self) -> str:
        return str(getattr(self.config.models, self.name, "") or "").strip()

    def build_command(self, opts: CallOptions | None = None) -> list[str]:
        opts = opts or CallOptions()
        model = self._model()
        if self.name == "claude":
            command = [self.binary, "-p", "--output-format", "text"]
            if model:
                command.extend(["--model", model])
            if opts.resume_id:
                command.extend(["--resume", opts.resume_id])
            elif opts.session_id:
                command.extend(["--session-id", opts.session_id])
            return command
        if self.name == "codex":
            command = [self.binary, "exec"]
            if opts.resume_id:
                command.extend(["resume", opts.resume_id])
            command.append("--skip-git-repo-check")
            if model:
                command.extend(["-m", model])
            command.append("-")
            return command
        command = [self.binary, "--yolo"]
        if model:
            command.extend(["-m", model])
        if opts.resume_id:
            command.extend(["--resume", opts.resume_id])
        return command

    async def execute(self, prompt: str, opts: CallOptions | None = None) -> AgentResult:
        opts = opts or CallOptions()
        sandbox = await self._session.get()
        command = self.build_command(opts)
        self._emit(
            {
                "event": "agent_cli_start",
                "agent": self.name,
                "command": command[:4],
                "timeout_ms": opts.timeout_ms,
            }
        )
        result = await sandbox.run(command, timeout_ms=opts.timeout_ms, input_text=prompt)
        self._emit(
            {
                "event": "agent_cli_exit",
                "agent": self.name,
                "exit_code": result.exit_code,
                "stderr": result.stderr[:400],
            }
        )
        if result.exit_code != 0:
            logger.debug("agent_cli_nonzero_exit", agent=self.name, exit_code=result.exit_code)
        return result

    async def kill(self) -> None:
        await self._session.kill()
