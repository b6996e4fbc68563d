from __future__ import annotations

import re
import sqlite3
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import structlog

from coderflow.helpers import utcnow_iso
from coderflow.sqlite import MirrorStore

logger = structlog.get_logger()

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def _slug(value: Any, fallback: str) -> str:
    normalized = _SLUG_PATTERN.sub("-", str(value or "").strip().lower()).strip("-")
    return normalized or fallback


class ScratchpadPersistence:
    """Markdown scratchpads per issue, mirrored into SQLite.

    The file is the primary artifact; the mirror row lets a deleted file be
    rehydrated, e.g. after a worktree is recreated.
    """

    def __init__(
        self,
        workspace_dir: Path,
        scratchpad_dir: Path,
        sqlite_path: Path,
        *,
        sqlite_sync: bool = True,
    ) -> None:
        self.workspace_dir = workspace_dir.resolve()
        self.scratchpad_dir = scratchpad_dir
        self.sqlite_path = sqlite_path
        self.mirror: MirrorStore | None = None
        if sqlite_sync:
            try:
                self.mirror = MirrorStore(sqlite_path)
            except (sqlite3.Error, OSError) as exc:
                logger.warning("sqlite_mirror_failed", table="scratchpad_files", error=str(exc))

    @property
    def mirror_enabled(self) -> bool:
        return self.mirror is not None

    def _rel_path(self, path: Path) -> str | None:
        try:
            rel = path.resolve().relative_to(self.workspace_dir)
        except ValueError:
            return None
        text = rel.as_posix()
        return None if text in {"", "."} else text

    def issue_scratchpad_path(self, issue: Mapping[str, Any] | None) -> Path:
        if not issue:
            return self.scratchpad_dir / "scratchpad.md"
        source = _slug(issue.get("source"), "issue")
        issue_id = _slug(issue.get("id"), "id")
        return self.scratchpad_dir / f"{source}-{issue_id}.md"

    def append_section(self, path: Path, heading: str, lines: Iterable[str] | str = ()) -> None:
        body = [lines] if isinstance(lines, str) else [line for line in lines if line is not None]
        block = "\n".join(["", f"## {heading}", f"- timestamp: {utcnow_iso()}", *body, ""])
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(block)
        self._sync(path)

    def _sync(self, path: Path) -> None:
        if self.mirror is None:
            return
        rel_path = self._rel_path(path)
        if rel_path is None or not path.exists():
            return
        try:
            content = path.read_text(encoding="utf-8")
            self.mirror.upsert_scratchpad(rel_path, content, utcnow_iso())
        except (sqlite3.Error, OSError) as exc:
            logger.warning(
                "sqlite_mirror_failed", table="scratchpad_files", path=rel_path, error=str(exc)
            )

    def restore_from_sqlite(self, path: Path) -> bool:
        """Recreate ``path`` from its mirror row; only when the file is absent."""
        if self.mirror is None or path.exists():
            return False
        rel_path = self._rel_path(path)
        if rel_path is None:
            return False
        try:
            content = self.mirror.load_scratchpad(rel_path)
        except sqlite3.Error as exc:
            logger.warning(
                "sqlite_mirror_failed", table="scratchpad_files", path=rel_path, error=str(exc)
            )
            return False
        if content is None:
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info("scratchpad_restored", path=rel_path)
        return True
