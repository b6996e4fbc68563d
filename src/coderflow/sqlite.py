"""SQLite mirror tables used to survive workspace recreation."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

WORKFLOW_RUNS_DDL = """
CREATE TABLE IF NOT EXISTS workflow_runs (
    run_id TEXT PRIMARY KEY,
    workflow TEXT NOT NULL,
    value TEXT NOT NULL,
    context TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

SCRATCHPAD_FILES_DDL = """
CREATE TABLE IF NOT EXISTS scratchpad_files (
    file_path TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class MirrorStore:
    """Thin wrapper over one SQLite database file holding the mirror tables."""

    def __init__(self, path: Path, *, timeout_seconds: float = 30.0) -> None:
        self.path = path
        self.timeout_seconds = timeout_seconds
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.execute(WORKFLOW_RUNS_DDL)
            conn.execute(SCRATCHPAD_FILES_DDL)
            conn.commit()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=self.timeout_seconds)
        try:
            yield conn
        finally:
            conn.close()

    def upsert_workflow_run(
        self,
        *,
        run_id: str,
        workflow: str,
        value: Any,
        context: dict[str, Any],
        updated_at: str,
    ) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO workflow_runs (run_id, workflow, value, context, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    workflow = excluded.workflow,
                    value = excluded.value,
                    context = excluded.context,
                    updated_at = excluded.updated_at
                """,
                (
                    run_id,
                    workflow,
                    json.dumps(value),
                    json.dumps(context, default=str),
                    updated_at,
                ),
            )
            conn.commit()

    def load_workflow_run(self, run_id: str | None = None) -> dict[str, Any] | None:
        """Load one mirrored run, or the most recently updated one when no id is given."""
        with self._connection() as conn:
            if run_id is None:
                row = conn.execute(
                    "SELECT run_id, workflow, value, context, updated_at FROM workflow_runs "
                    "ORDER BY updated_at DESC LIMIT 1"
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT run_id, workflow, value, context, updated_at FROM workflow_runs "
                    "WHERE run_id = ?",
                    (run_id,),
                ).fetchone()
        if row is None:
            return None
        return {
            "run_id": row[0],
            "workflow": row[1],
            "value": json.loads(row[2]),
            "context": json.loads(row[3]),
            "updated_at": row[4],
        }

    def upsert_scratchpad(self, file_path: str, content: str, updated_at: str) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO scratchpad_files (file_path, content, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(file_path) DO UPDATE SET
                    content = excluded.content,
                    updated_at = excluded.updated_at
                """,
                (file_path, content, updated_at),
            )
            conn.commit()

    def load_scratchpad(self, file_path: str) -> str | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT content FROM scratchpad_files WHERE file_path = ? LIMIT 1",
                (file_path,),
            ).fetchone()
        return None if row is None else str(row[0])
