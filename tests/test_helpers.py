import os
from datetime import UTC, datetime, timedelta

import pytest

from coderflow.helpers import (
    age_ms,
    build_secrets,
    extract_json,
    is_pid_alive,
    parse_iso,
    utcnow_iso,
)
from coderflow.worktrees import sanitize_branch_for_ref, worktree_path


def test_extract_json_prefers_whole_text() -> None:
    payload = '{"summary": "see ```json {\\"x\\": 1} ```", "ok": true}'

    assert extract_json(payload) == {"summary": 'see ```json {"x": 1} ```', "ok": True}


def test_extract_json_finds_embedded_object() -> None:
    stdout = 'Here you go:\n{"issues": [1, 2]}\nThanks'

    assert extract_json(stdout) == {"issues": [1, 2]}


def test_extract_json_reads_fenced_block() -> None:
    stdout = "prefix } noise {\n```json\n[1, 2, 3]\n```"

    assert extract_json(stdout) == [1, 2, 3]


def test_extract_json_error_includes_preview() -> None:
    with pytest.raises(ValueError, match="Preview"):
        extract_json("no structured output here")
    with pytest.raises(ValueError, match="Empty response"):
        extract_json("   ")


def test_timestamps_roundtrip() -> None:
    stamp = utcnow_iso()

    assert stamp.endswith("Z")
    assert parse_iso(stamp) is not None
    assert parse_iso("not a date") is None
    old = (datetime.now(UTC) - timedelta(seconds=5)).isoformat()
    assert age_ms(old) >= 5000
    assert age_ms(None) is None


def test_is_pid_alive() -> None:
    assert is_pid_alive(os.getpid()) is True
    assert is_pid_alive(0) is None
    assert is_pid_alive("123") is None
    assert is_pid_alive(True) is None
    assert is_pid_alive(2**22 + 12345) is False


def test_build_secrets_mirrors_gemini_keys() -> None:
    secrets = build_secrets(["GOOGLE_API_KEY", "EMPTY"], env={"GOOGLE_API_KEY": "g", "EMPTY": ""})

    assert secrets == {"GOOGLE_API_KEY": "g", "GEMINI_API_KEY": "g"}


def test_sanitize_branch_for_ref() -> None:
    assert sanitize_branch_for_ref("feature/My Branch!") == "feature/My-Branch-"
    assert sanitize_branch_for_ref("a..b/.hidden/x.lock") == "a-b/hidden/x-lock"
    assert sanitize_branch_for_ref("///") == "branch"


def test_worktree_path_stays_inside_root(tmp_path) -> None:
    path = worktree_path(tmp_path, "feature/one")

    assert path == (tmp_path / "feature" / "one").resolve()
    assert worktree_path(tmp_path, "../../etc").is_relative_to(tmp_path.resolve())
