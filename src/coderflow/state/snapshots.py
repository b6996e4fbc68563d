from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from coderflow.helpers import age_ms, is_pid_alive, utcnow_iso
from coderflow.sqlite import MirrorStore

logger = structlog.get_logger()

SNAPSHOT_SCHEMA_VERSION = 1
HEARTBEAT_STALE_MS = 30_000
ACTIVE_VALUES = frozenset({"running", "paused"})
TERMINAL_VALUES = frozenset({"completed", "failed", "cancelled"})


class WorkflowStateError(RuntimeError):
    """Raised by strict loaders when a persisted snapshot is unreadable."""


@dataclass(slots=True)
class WorkflowSnapshot:
    run_id: str
    workflow: str
    value: str
    context: dict[str, Any] = field(default_factory=dict)
    updated_at: str = field(default_factory=utcnow_iso)
    version: int = SNAPSHOT_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> WorkflowSnapshot:
        if not isinstance(data, dict):
            raise WorkflowStateError("Workflow snapshot must be a JSON object")
        run_id = data.get("run_id")
        value = data.get("value")
        if not isinstance(run_id, str) or not run_id:
            raise WorkflowStateError("Workflow snapshot is missing run_id")
        if not isinstance(value, str) or not value:
            raise WorkflowStateError("Workflow snapshot is missing value")
        context = data.get("context")
        return cls(
            run_id=run_id,
            workflow=str(data.get("workflow") or "develop"),
            value=value,
            context=dict(context) if isinstance(context, dict) else {},
            updated_at=str(data.get("updated_at") or ""),
            version=int(data.get("version") or SNAPSHOT_SCHEMA_VERSION),
        )


def workflow_state_path(workspace_dir: Path) -> Path:
    return workspace_dir / ".coder" / "workflow-state.json"


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    tmp.write_text(json.dumps(payload, indent=2, default=str) + "\n", encoding="utf-8")
    os.replace(tmp, path)


def _mirror(mirror: MirrorStore | None, snapshot: WorkflowSnapshot) -> None:
    if mirror is None:
        return
    try:
        mirror.upsert_workflow_run(
            run_id=snapshot.run_id,
            workflow=snapshot.workflow,
            value=snapshot.value,
            context=snapshot.context,
            updated_at=snapshot.updated_at,
        )
    except (sqlite3.Error, OSError) as exc:
        logger.warning(
            "sqlite_mirror_failed", table="workflow_runs", run_id=snapshot.run_id, error=str(exc)
        )


def save_workflow_snapshot(
    workspace_dir: Path,
    *,
    run_id: str,
    workflow: str,
    value: str,
    context: dict[str, Any],
    mirror: MirrorStore | None = None,
) -> WorkflowSnapshot:
    snapshot = WorkflowSnapshot(run_id=run_id, workflow=workflow, value=value, context=dict(context))
    _write_json_atomic(workflow_state_path(workspace_dir), snapshot.to_dict())
    _mirror(mirror, snapshot)
    return snapshot


def save_workflow_terminal_state(
    workspace_dir: Path,
    *,
    run_id: str,
    state: str,
    workflow: str = "develop",
    context: dict[str, Any] | None = None,
    mirror: MirrorStore | None = None,
) -> WorkflowSnapshot:
    """Record a final status directly, bypassing the transition function."""
    if state not in TERMINAL_VALUES:
        raise ValueError(f"Not a terminal workflow state: {state!r}")
    return save_workflow_snapshot(
        workspace_dir,
        run_id=run_id,
        workflow=workflow,
        value=state,
        context=context or {},
        mirror=mirror,
    )


def read_workflow_snapshot(path: Path) -> WorkflowSnapshot:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise WorkflowStateError(f"Unable to read workflow snapshot {path}: {exc}") from exc
    return WorkflowSnapshot.from_dict(data)


def load_workflow_snapshot(
    workspace_dir: Path,
    *,
    mirror: MirrorStore | None = None,
    run_id: str | None = None,
) -> WorkflowSnapshot | None:
    path = workflow_state_path(workspace_dir)
    if path.exists():
        try:
            snapshot = read_workflow_snapshot(path)
        except WorkflowStateError as exc:
            logger.warning("workflow_snapshot_unreadable", path=str(path), error=str(exc))
        else:
            if run_id is None or snapshot.run_id == run_id:
                return snapshot

    if mirror is None:
        return None
    try:
        row = mirror.load_workflow_run(run_id)
    except (sqlite3.Error, ValueError) as exc:
        logger.warning("sqlite_mirror_failed", table="workflow_runs", error=str(exc))
        return None
    if row is None:
        return None
    try:
        return WorkflowSnapshot.from_dict(row)
    except WorkflowStateError:
        return None


@dataclass(slots=True)
class StalenessReport:
    is_stale: bool
    reason: str | None = None
    heartbeat_age_ms: float | None = None
    runner_pid: int | None = None
    runner_alive: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def detect_staleness(
    snapshot: WorkflowSnapshot,
    *,
    now: datetime | None = None,
    heartbeat_stale_ms: int = HEARTBEAT_STALE_MS,
) -> StalenessReport:
    context = snapshot.context
    heartbeat_age = age_ms(context.get("last_heartbeat_at"), now=now)
    runner_pid = context.get("runner_pid")
    runner_alive = is_pid_alive(runner_pid)
    report = StalenessReport(
        is_stale=False,
        heartbeat_age_ms=heartbeat_age,
        runner_pid=runner_pid if isinstance(runner_pid, int) else None,
        runner_alive=runner_alive,
    )
    if snapshot.value not in ACTIVE_VALUES:
        return report
    if runner_alive is False:
        report.is_stale = True
        report.reason = "runner_process_not_alive"
    elif heartbeat_age is not None and heartbeat_age > heartbeat_stale_ms:
        report.is_stale = True
        report.reason = "heartbeat_stale"
    return report


def mark_run_terminal(
    workspace_dir: Path,
    run_id: str,
    status: str = "failed",
    *,
    mirror: MirrorStore | None = None,
) -> WorkflowSnapshot | None:
    """Freeze a crashed run on disk; returns None if the run is not active there."""
    snapshot = load_workflow_snapshot(workspace_dir, mirror=mirror, run_id=run_id)
    if snapshot is None or snapshot.run_id != run_id or snapshot.value not in ACTIVE_VALUES:
        return None
    final = status if status in TERMINAL_VALUES else "failed"
    now = utcnow_iso()
    context = {
        **snapshot.context,
        "current_stage": None,
        "active_agent": None,
        "runner_pid": None,
        "last_heartbeat_at": now,
        "completed_at": now,
        "error": "marked_terminal_on_disk" if final == "failed" else None,
    }
    return save_workflow_terminal_state(
        workspace_dir,
        run_id=run_id,
        state=final,
        workflow=snapshot.workflow,
        context=context,
        mirror=mirror,
    )
