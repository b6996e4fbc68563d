from __future__ import annotations

import json
from pathlib import Path

import click

from coderflow.backends.cli import AGENT_ALIASES, resolve_agent_name
from coderflow.config import CoderConfig, load_config, save_config
from coderflow.logging import setup_logging
from coderflow.orchestrator import workspace_status
from coderflow.sqlite import MirrorStore
from coderflow.state.scratchpad import ScratchpadPersistence
from coderflow.state.snapshots import mark_run_terminal
from coderflow.state.start_lock import lock_path_for, read_lock_record


def _resolve_config_path(workspace: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace / config_path
    return config_path.resolve()


def _load(config_value: str) -> tuple[Path, CoderConfig]:
    workspace = Path.cwd().resolve()
    return workspace, load_config(_resolve_config_path(workspace, config_value))


def _mirror_for(workspace: Path, config: CoderConfig) -> MirrorStore | None:
    if not config.workflow.sqlite_sync:
        return None
    db_path = workspace / config.workflow.sqlite_path
    if not db_path.exists():
        return None
    return MirrorStore(db_path)


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


@click.group()
@click.option("--log-level", default="WARNING", show_default=True)
@click.option("--json-logs/--console-logs", default=False)
def cli(log_level: str, json_logs: bool) -> None:
    """Coderflow operator CLI."""
    setup_logging(json_output=json_logs, log_level=log_level)


@cli.command("init")
@click.option("--fallback", "fallback_value", default=None, help="Fallback backend for every role.")
@click.option("--config", "config_value", default="coder.toml", show_default=True)
def init_command(fallback_value: str | None, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace, config_value)
    config = load_config(config_path)
    if fallback_value:
        try:
            fallback = resolve_agent_name(fallback_value)
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
        config.agents.fallback = {role: fallback for role in config.agents.roles}
    save_config(config_path, config)

    (workspace / ".coder").mkdir(parents=True, exist_ok=True)
    (workspace / config.workflow.scratchpad_dir).mkdir(parents=True, exist_ok=True)
    if config.workflow.sqlite_sync:
        MirrorStore(workspace / config.workflow.sqlite_path)

    click.echo(f"Initialized coderflow in {workspace}")
    click.echo(f"Config: {config_path}")
    click.echo(f"SQLite mirror: {'on' if config.workflow.sqlite_sync else 'off'}")


@cli.command("backend")
@click.argument("role")
@click.argument("backend_name", type=click.Choice(sorted(AGENT_ALIASES)))
@click.option("--config", "config_value", default="coder.toml", show_default=True)
def backend_command(role: str, backend_name: str, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace, config_value)
    config = load_config(config_path)
    config.agents.roles[role] = resolve_agent_name(backend_name)
    save_config(config_path, config)
    click.echo(f"Role {role} now uses {config.agents.roles[role]}")


@cli.command("status")
@click.option("--config", "config_value", default="coder.toml", show_default=True)
def status_command(config_value: str) -> None:
    workspace, config = _load(config_value)
    _echo_json(workspace_status(workspace, mirror=_mirror_for(workspace, config)))


@cli.command("mark-terminal")
@click.argument("run_id")
@click.option(
    "--status",
    "status_value",
    type=click.Choice(["failed", "cancelled", "completed"]),
    default="failed",
    show_default=True,
)
@click.option("--config", "config_value", default="coder.toml", show_default=True)
def mark_terminal_command(run_id: str, status_value: str, config_value: str) -> None:
    workspace, config = _load(config_value)
    snapshot = mark_run_terminal(
        workspace, run_id, status_value, mirror=_mirror_for(workspace, config)
    )
    if snapshot is None:
        raise click.ClickException(f"Run {run_id} is not active in {workspace}")
    click.echo(f"Run {run_id} marked {snapshot.value}")


@cli.command("scratchpad-restore")
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--config", "config_value", default="coder.toml", show_default=True)
def scratchpad_restore_command(path: Path, config_value: str) -> None:
    workspace, config = _load(config_value)
    if not config.workflow.sqlite_sync:
        raise click.ClickException("SQLite mirroring is disabled in config")
    target = path if path.is_absolute() else workspace / path
    persistence = ScratchpadPersistence(
        workspace,
        workspace / config.workflow.scratchpad_dir,
        workspace / config.workflow.sqlite_path,
        sqlite_sync=True,
    )
    if target.exists():
        click.echo(f"Scratchpad already present: {target}")
        return
    if not persistence.restore_from_sqlite(target):
        raise click.ClickException(f"No mirrored scratchpad for {target}")
    click.echo(f"Restored {target}")


@cli.command("lock")
def lock_command() -> None:
    workspace = Path.cwd().resolve()
    path = lock_path_for(workspace)
    if not path.exists():
        click.echo("No start lock held.")
        return
    record = read_lock_record(path)
    if record is None:
        raise click.ClickException(f"Lock file is unreadable: {path}")
    _echo_json({"path": str(path), **record})
