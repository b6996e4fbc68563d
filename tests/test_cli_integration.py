import json
import os
from pathlib import Path

import pytest
from click.testing import CliRunner

from coderflow.cli import cli
from coderflow.config import load_config
from coderflow.sqlite import MirrorStore
from coderflow.state.scratchpad import ScratchpadPersistence
from coderflow.state.snapshots import load_workflow_snapshot, save_workflow_snapshot
from coderflow.state.start_lock import lock_path_for


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    return tmp_path.resolve()


def test_init_writes_config_dirs_and_database(workspace: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["init", "--fallback", "claude-code"])

    assert result.exit_code == 0, result.output
    assert "Initialized coderflow" in result.output
    assert "SQLite mirror: on" in result.output
    config = load_config(workspace / "coder.toml")
    assert set(config.agents.fallback.values()) == {"claude"}
    assert (workspace / ".coder" / "scratchpad").is_dir()
    assert (workspace / ".coder" / "state.db").exists()


def test_init_rejects_unknown_fallback(workspace: Path) -> None:
    result = CliRunner().invoke(cli, ["init", "--fallback", "cobol"])

    assert result.exit_code != 0
    assert "Unsupported agent backend" in result.output
    assert not (workspace / "coder.toml").exists()


def test_backend_command_updates_role(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init"])

    result = runner.invoke(cli, ["backend", "reviewer", "gemini-cli"])

    assert result.exit_code == 0, result.output
    assert "Role reviewer now uses gemini" in result.output
    assert load_config(workspace / "coder.toml").agents.roles["reviewer"] == "gemini"


def test_status_reports_no_run_then_mirrored_run(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init"])

    empty = runner.invoke(cli, ["status"])
    assert empty.exit_code == 0, empty.output
    assert json.loads(empty.output)["run"] is None

    save_workflow_snapshot(
        workspace,
        run_id="cli-1",
        workflow="develop",
        value="running",
        context={"run_id": "cli-1", "runner_pid": os.getpid(), "last_heartbeat_at": None},
        mirror=MirrorStore(workspace / ".coder" / "state.db"),
    )
    (workspace / ".coder" / "workflow-state.json").unlink()

    mirrored = runner.invoke(cli, ["status"])
    payload = json.loads(mirrored.output)
    assert payload["run"]["run_id"] == "cli-1"
    assert payload["run"]["value"] == "running"
    assert payload["staleness"]["is_stale"] is False


def test_mark_terminal_freezes_active_run(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init"])
    save_workflow_snapshot(
        workspace,
        run_id="cli-2",
        workflow="develop",
        value="paused",
        context={"run_id": "cli-2", "current_stage": "review"},
    )

    result = runner.invoke(cli, ["mark-terminal", "cli-2"])
    again = runner.invoke(cli, ["mark-terminal", "cli-2"])

    assert result.exit_code == 0, result.output
    assert "marked failed" in result.output
    snapshot = load_workflow_snapshot(workspace)
    assert snapshot is not None
    assert snapshot.value == "failed"
    assert snapshot.context["current_stage"] is None
    assert again.exit_code != 0
    assert "is not active" in again.output


def test_scratchpad_restore_rehydrates_deleted_file(workspace: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init"])
    persistence = ScratchpadPersistence(
        workspace, workspace / ".coder" / "scratchpad", workspace / ".coder" / "state.db"
    )
    path = persistence.issue_scratchpad_path({"source": "github", "id": 12})
    persistence.append_section(path, "Plan", ["- step one"])
    original = path.read_text(encoding="utf-8")
    path.unlink()

    result = runner.invoke(cli, ["scratchpad-restore", ".coder/scratchpad/github-12.md"])
    present = runner.invoke(cli, ["scratchpad-restore", ".coder/scratchpad/github-12.md"])
    missing = runner.invoke(cli, ["scratchpad-restore", ".coder/scratchpad/nothing.md"])

    assert result.exit_code == 0, result.output
    assert path.read_text(encoding="utf-8") == original
    assert "already present" in present.output
    assert missing.exit_code != 0
    assert "No mirrored scratchpad" in missing.output


def test_lock_command_shows_holder(workspace: Path) -> None:
    runner = CliRunner()

    idle = runner.invoke(cli, ["lock"])
    assert idle.output.strip() == "No start lock held."

    path = lock_path_for(workspace)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"token": "abc", "pid": 4242, "createdAt": "2026-01-01T00:00:00.000Z"}),
        encoding="utf-8",
    )

    held = runner.invoke(cli, ["lock"])
    payload = json.loads(held.output)
    assert payload["pid"] == 4242
    assert payload["token"] == "abc"

    path.write_text("{broken", encoding="utf-8")
    broken = runner.invoke(cli, ["lock"])
    assert broken.exit_code != 0
    assert "unreadable" in broken.output
