from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

BackendName = Literal["gemini", "claude", "codex"]
CONFIG_FILENAME = "coder.toml"

DEFAULT_PASS_ENV = [
    "GOOGLE_API_KEY",
    "GEMINI_API_KEY",
    "ANTHROPIC_API_KEY",
    "CLAUDE_CODE_OAUTH_TOKEN",
    "OPENAI_API_KEY",
    "GITHUB_TOKEN",
    "LINEAR_API_KEY",
]


def _default_roles() -> dict[str, str]:
    return {
        "issue_selector": "gemini",
        "planner": "claude",
        "plan_reviewer": "gemini",
        "programmer": "claude",
        "reviewer": "codex",
        "committer": "codex",
    }


def _default_timeouts() -> dict[str, int]:
    return {
        "issue_draft": 600_000,
        "planning": 1_800_000,
        "plan_review": 900_000,
        "implementation": 3_600_000,
        "review": 1_800_000,
    }


@dataclass(slots=True)
class RetryConfig:
    retries: int = 1
    backoff_ms: int = 5000
    retry_on_rate_limit: bool = True


@dataclass(slots=True)
class AgentsConfig:
    roles: dict[str, str] = field(default_factory=_default_roles)
    fallback: dict[str, str] = field(default_factory=dict)
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentsConfig:
        roles = _default_roles()
        roles.update(data.get("roles", {}))
        return cls(
            roles=roles,
            fallback=dict(data.get("fallback", {})),
            retry=RetryConfig(**data.get("retry", {})),
        )


@dataclass(slots=True)
class ModelsConfig:
    gemini: str = "gemini-2.5-flash"
    claude: str = "claude-sonnet-4-5"
    codex: str = ""
    gemini_api_endpoint: str = "https://generativelanguage.googleapis.com/v1beta"
    anthropic_api_endpoint: str = "https://api.anthropic.com"
    gemini_api_key_env: str = "GEMINI_API_KEY"
    anthropic_api_key_env: str = "ANTHROPIC_API_KEY"


@dataclass(slots=True)
class WorkflowConfig:
    timeouts: dict[str, int] = field(default_factory=_default_timeouts)
    default_timeout_ms: int = 3_600_000
    heartbeat_interval_ms: int = 2000
    max_pause_ms: int = 24 * 60 * 60 * 1000
    sqlite_sync: bool = True
    sqlite_path: str = ".coder/state.db"
    scratchpad_dir: str = ".coder/scratchpad"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowConfig:
        payload = dict(data)
        timeouts = _default_timeouts()
        timeouts.update(payload.pop("timeouts", {}))
        return cls(timeouts=timeouts, **payload)

    def timeout_for(self, stage: str) -> int:
        return int(self.timeouts.get(stage, self.default_timeout_ms))


@dataclass(slots=True)
class LockConfig:
    timeout_ms: int = 5000
    stale_ms: int = 60_000
    retry_interval_ms: int = 200
    corrupt_min_age_ms: int = 2000


@dataclass(slots=True)
class CoderConfig:
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    pass_env: list[str] = field(default_factory=lambda: list(DEFAULT_PASS_ENV))
    verbose: bool = False

    @classmethod
    def default(cls) -> CoderConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CoderConfig:
        return cls(
            agents=AgentsConfig.from_dict(data.get("agents", {})),
            models=ModelsConfig(**data.get("models", {})),
            workflow=WorkflowConfig.from_dict(data.get("workflow", {})),
            lock=LockConfig(**data.get("lock", {})),
            pass_env=list(data.get("pass_env", DEFAULT_PASS_ENV)),
            verbose=bool(data.get("verbose", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pass_env": list(self.pass_env),
            "verbose": self.verbose,
            "agents": {
                "roles": dict(self.agents.roles),
                "fallback": dict(self.agents.fallback),
                "retry": {
                    "retries": self.agents.retry.retries,
                    "backoff_ms": self.agents.retry.backoff_ms,
                    "retry_on_rate_limit": self.agents.retry.retry_on_rate_limit,
                },
            },
            "models": {
                "gemini": self.models.gemini,
                "claude": self.models.claude,
                "codex": self.models.codex,
                "gemini_api_endpoint": self.models.gemini_api_endpoint,
                "anthropic_api_endpoint": self.models.anthropic_api_endpoint,
                "gemini_api_key_env": self.models.gemini_api_key_env,
                "anthropic_api_key_env": self.models.anthropic_api_key_env,
            },
            "workflow": {
                "default_timeout_ms": self.workflow.default_timeout_ms,
                "heartbeat_interval_ms": self.workflow.heartbeat_interval_ms,
                "max_pause_ms": self.workflow.max_pause_ms,
                "sqlite_sync": self.workflow.sqlite_sync,
                "sqlite_path": self.workflow.sqlite_path,
                "scratchpad_dir": self.workflow.scratchpad_dir,
                "timeouts": dict(self.workflow.timeouts),
            },
            "lock": {
                "timeout_ms": self.lock.timeout_ms,
                "stale_ms": self.lock.stale_ms,
                "retry_interval_ms": self.lock.retry_interval_ms,
                "corrupt_min_age_ms": self.lock.corrupt_min_age_ms,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _dump_table(lines: list[str], name: str, table: dict[str, Any]) -> None:
    scalars = {key: value for key, value in table.items() if not isinstance(value, dict)}
    nested = {key: value for key, value in table.items() if isinstance(value, dict)}
    lines.append(f"[{name}]")
    for key, value in scalars.items():
        lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")
    for key, value in nested.items():
        _dump_table(lines, f"{name}.{key}", value)


def dumps_toml(config: CoderConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for key, value in data.items():
        if not isinstance(value, dict):
            lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")
    for section in ["agents", "models", "workflow", "lock"]:
        _dump_table(lines, section, data[section])
    return "\n".join(lines).strip() + "\n"


def config_path_for(workspace_dir: Path) -> Path:
    return workspace_dir / CONFIG_FILENAME


def load_config(path: Path) -> CoderConfig:
    if not path.exists():
        return CoderConfig.default()
    return CoderConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: CoderConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
