import os
import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from coderflow.sqlite import MirrorStore
from coderflow.state.snapshots import (
    WorkflowSnapshot,
    WorkflowStateError,
    detect_staleness,
    load_workflow_snapshot,
    mark_run_terminal,
    read_workflow_snapshot,
    save_workflow_snapshot,
    save_workflow_terminal_state,
    workflow_state_path,
)

DEAD_PID = 2**22 + 4242


def _save(workspace: Path, mirror: MirrorStore | None = None, **context: object) -> WorkflowSnapshot:
    return save_workflow_snapshot(
        workspace,
        run_id="run-7",
        workflow="develop",
        value="running",
        context={"run_id": "run-7", **context},
        mirror=mirror,
    )


def test_load_prefers_file_then_mirror_then_none(tmp_path: Path) -> None:
    mirror = MirrorStore(tmp_path / "state.db")
    assert load_workflow_snapshot(tmp_path, mirror=mirror) is None

    _save(tmp_path, mirror, current_stage="planning")
    from_file = load_workflow_snapshot(tmp_path, mirror=mirror)
    assert from_file is not None
    assert from_file.context["current_stage"] == "planning"

    workflow_state_path(tmp_path).unlink()
    from_mirror = load_workflow_snapshot(tmp_path, mirror=mirror)
    assert from_mirror is not None
    assert from_mirror.run_id == "run-7"
    assert from_mirror.value == "running"
    assert from_mirror.context["current_stage"] == "planning"

    assert load_workflow_snapshot(tmp_path) is None


def test_corrupt_file_falls_back_to_mirror(tmp_path: Path) -> None:
    mirror = MirrorStore(tmp_path / "state.db")
    _save(tmp_path, mirror)
    workflow_state_path(tmp_path).write_text("{not json", encoding="utf-8")

    with pytest.raises(WorkflowStateError):
        read_workflow_snapshot(workflow_state_path(tmp_path))
    snapshot = load_workflow_snapshot(tmp_path, mirror=mirror)
    assert snapshot is not None
    assert snapshot.run_id == "run-7"


def test_terminal_writer_records_final_state(tmp_path: Path) -> None:
    snapshot = save_workflow_terminal_state(
        tmp_path, run_id="run-9", state="cancelled", context={"error": None}
    )

    assert snapshot.value == "cancelled"
    assert load_workflow_snapshot(tmp_path).value == "cancelled"  # type: ignore[union-attr]
    with pytest.raises(ValueError, match="Not a terminal"):
        save_workflow_terminal_state(tmp_path, run_id="run-9", state="running")


def test_staleness_by_heartbeat_age() -> None:
    now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    fresh = WorkflowSnapshot(
        run_id="r",
        workflow="develop",
        value="running",
        context={"last_heartbeat_at": (now - timedelta(seconds=5)).isoformat(), "runner_pid": os.getpid()},
    )
    stale = WorkflowSnapshot(
        run_id="r",
        workflow="develop",
        value="paused",
        context={"last_heartbeat_at": (now - timedelta(seconds=45)).isoformat()},
    )

    assert detect_staleness(fresh, now=now).is_stale is False
    report = detect_staleness(stale, now=now)
    assert report.is_stale is True
    assert report.reason == "heartbeat_stale"
    assert report.heartbeat_age_ms == pytest.approx(45_000)


def test_staleness_by_dead_runner_pid_and_terminal_runs() -> None:
    dead = WorkflowSnapshot(
        run_id="r",
        workflow="develop",
        value="running",
        context={"last_heartbeat_at": datetime.now(UTC).isoformat(), "runner_pid": DEAD_PID},
    )
    finished = WorkflowSnapshot(
        run_id="r", workflow="develop", value="completed", context={"runner_pid": DEAD_PID}
    )

    report = detect_staleness(dead)
    assert report.reason == "runner_process_not_alive"
    assert report.runner_alive is False
    assert detect_staleness(finished).is_stale is False


def test_mark_run_terminal_only_touches_active_matching_run(tmp_path: Path) -> None:
    _save(tmp_path, current_stage="review", runner_pid=DEAD_PID)

    assert mark_run_terminal(tmp_path, "other-run") is None
    marked = mark_run_terminal(tmp_path, "run-7", "failed")

    assert marked is not None
    assert marked.value == "failed"
    assert marked.context["error"] == "marked_terminal_on_disk"
    assert marked.context["current_stage"] is None
    assert marked.context["completed_at"] is not None
    assert mark_run_terminal(tmp_path, "run-7", "cancelled") is None


def test_mark_run_terminal_cancelled_clears_error(tmp_path: Path) -> None:
    _save(tmp_path)

    marked = mark_run_terminal(tmp_path, "run-7", "cancelled")

    assert marked is not None
    assert marked.value == "cancelled"
    assert marked.context["error"] is None


def test_mirror_failure_does_not_fail_snapshot_save(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    mirror = MirrorStore(tmp_path / "state.db")

    def broken_upsert(**kwargs: object) -> None:
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(mirror, "upsert_workflow_run", broken_upsert)

    with capture_logs() as logs:
        saved = _save(tmp_path, mirror, current_stage="review")

    assert saved.value == "running"
    loaded = load_workflow_snapshot(tmp_path)
    assert loaded is not None
    assert loaded.context["current_stage"] == "review"
    failures = [entry for entry in logs if entry["event"] == "sqlite_mirror_failed"]
    assert failures[0]["table"] == "workflow_runs"
    assert failures[0]["run_id"] == "run-7"
    assert "disk I/O error" in failures[0]["error"]
