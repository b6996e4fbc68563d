from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import httpx
import structlog

from coderflow.backends.api import ApiProvider, create_api_agent
from coderflow.backends.base import AgentAdapter
from coderflow.backends.cli import CliAgent, resolve_agent_name
from coderflow.backends.resilient import BackendEventHook, RetryFallbackAgent, RetryPolicy
from coderflow.backends.sandbox import HostSandboxProvider
from coderflow.config import CoderConfig
from coderflow.helpers import build_secrets

logger = structlog.get_logger()

Scope = Literal["workspace", "repo"]
PoolKey = tuple[str, str, str]
AdapterFactory = Callable[[str, Path, str], AgentAdapter]


@dataclass(slots=True)
class AgentLease:
    agent_name: str
    agent: AgentAdapter
    key: PoolKey


class AgentPool:
    """Creates, caches, and tears down adapters keyed by (mode, backend, cwd).

    One pool belongs to one orchestrator session; nothing is shared at module
    level. ``drain`` kills every cached adapter and empties the cache.
    """

    def __init__(
        self,
        config: CoderConfig,
        workspace_dir: Path,
        *,
        repo_root: Path | None = None,
        secrets: Mapping[str, str] | None = None,
        provider: HostSandboxProvider | None = None,
        event_hook: BackendEventHook | None = None,
        api_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.workspace_dir = workspace_dir.resolve()
        self.repo_root = (repo_root or workspace_dir).resolve()
        self.secrets = dict(secrets) if secrets is not None else build_secrets(config.pass_env)
        self.event_hook = event_hook
        self._provider = provider or HostSandboxProvider(default_cwd=self.workspace_dir)
        self._api_transport = api_transport
        self._agents: dict[PoolKey, AgentAdapter] = {}
        self._wrappers: dict[tuple[str, PoolKey], RetryFallbackAgent] = {}
        self._factories: dict[str, AdapterFactory] = {}

    def register_mode(self, mode: str, factory: AdapterFactory) -> None:
        """Register an adapter factory for an extra mode (e.g. a tool-calling client).

        ``factory(role, cwd, server_identity)`` builds the adapter on first use.
        """
        if mode in {"cli", "api"}:
            raise ValueError(f"Agent mode {mode!r} is built in")
        self._factories[mode] = factory

    def __len__(self) -> int:
        return len(self._agents)

    def keys(self) -> list[PoolKey]:
        return list(self._agents)

    def role_agent_name(self, role: str) -> str:
        selected = self.config.agents.roles.get(role)
        return resolve_agent_name(selected or "gemini")

    def _cwd_for(self, scope: Scope) -> Path:
        if scope == "workspace":
            return self.workspace_dir
        if scope == "repo":
            return self.repo_root
        raise ValueError(f"Unknown agent scope: {scope!r}")

    def _new_cli_agent(self, agent_name: str, cwd: Path) -> CliAgent:
        return CliAgent(
            agent_name,
            cwd=cwd,
            config=self.config,
            secrets=self.secrets,
            provider=self._provider,
            event_hook=self.event_hook,
        )

    def _cached(self, key: PoolKey, build: Callable[[], AgentAdapter]) -> AgentAdapter:
        agent = self._agents.get(key)
        if agent is None:
            agent = build()
            self._agents[key] = agent
            logger.debug("agent_pool_created", mode=key[0], backend=key[1], cwd=key[2])
        return agent

    def get_agent(
        self,
        role: str,
        *,
        scope: Scope = "repo",
        mode: str = "cli",
        provider: ApiProvider = "gemini",
        system_prompt: str = "",
        server_identity: str | None = None,
    ) -> AgentLease:
        cwd = self._cwd_for(scope)
        if mode == "api":
            key: PoolKey = ("api", provider, str(cwd))
            agent = self._cached(
                key,
                lambda: create_api_agent(
                    self.config,
                    self.secrets,
                    provider=provider,
                    system_prompt=system_prompt,
                    transport=self._api_transport,
                ),
            )
            return AgentLease(agent_name=f"{provider}-api", agent=agent, key=key)

        if mode == "cli":
            agent_name = self.role_agent_name(role)
            key = ("cli", agent_name, str(cwd))
            raw = self._cached(key, lambda: self._new_cli_agent(agent_name, cwd))
            return AgentLease(
                agent_name=agent_name,
                agent=self._maybe_wrap(role, key, raw, cwd),
                key=key,
            )

        factory = self._factories.get(mode)
        if factory is None:
            raise ValueError(f'Agent mode "{mode}" is not supported')
        identity = server_identity or role
        key = (mode, identity, str(cwd))
        agent = self._cached(key, lambda: factory(role, cwd, identity))
        return AgentLease(agent_name=identity, agent=agent, key=key)

    def _maybe_wrap(
        self, role: str, key: PoolKey, raw: AgentAdapter, cwd: Path
    ) -> AgentAdapter:
        retry_cfg = self.config.agents.retry
        fallback_name = self.config.agents.fallback.get(role)
        if retry_cfg.retries <= 0 and not fallback_name:
            return raw

        wrapper = self._wrappers.get((role, key))
        if wrapper is not None:
            return wrapper

        fallback_agent: AgentAdapter | None = None
        if fallback_name:
            resolved = resolve_agent_name(fallback_name)
            fallback_key: PoolKey = ("cli", resolved, str(cwd))
            fallback_agent = self._cached(
                fallback_key, lambda: self._new_cli_agent(resolved, cwd)
            )
        wrapper = RetryFallbackAgent(
            raw,
            policy=RetryPolicy.from_config(retry_cfg),
            fallback=fallback_agent,
            event_hook=self.event_hook,
        )
        self._wrappers[(role, key)] = wrapper
        return wrapper

    async def set_repo_root(self, repo_root: Path) -> None:
        """Rebind repo-scoped agents; kills entries bound to a stale directory."""
        self.repo_root = repo_root.resolve()
        keep = {str(self.repo_root), str(self.workspace_dir)}
        stale = [(key, agent) for key, agent in self._agents.items() if key[2] not in keep]
        for key, _ in stale:
            del self._agents[key]
            logger.info("agent_pool_evicted", mode=key[0], backend=key[1], cwd=key[2])
        stale_keys = {key for key, _ in stale}
        for wrapper_key in [k for k in self._wrappers if k[1] in stale_keys]:
            del self._wrappers[wrapper_key]
        await _kill_all([agent for _, agent in stale])

    async def drain(self) -> None:
        agents = list(self._agents.values())
        self._agents.clear()
        self._wrappers.clear()
        await _kill_all(agents)

    def describe(self) -> list[dict[str, Any]]:
        return [
            {"mode": key[0], "backend": key[1], "cwd": key[2], "agent": type(agent).__name__}
            for key, agent in self._agents.items()
        ]


async def _kill_all(agents: list[AgentAdapter]) -> None:
    results = await asyncio.gather(*(agent.kill() for agent in agents), return_exceptions=True)
    for agent, result in zip(agents, results):
        if isinstance(result, Exception):
            logger.warning("agent_kill_failed", backend=agent.name, error=str(result))
