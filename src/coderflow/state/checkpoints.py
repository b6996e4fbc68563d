from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from coderflow.helpers import utcnow_iso
from coderflow.machines.base import StepResult


class StepCheckpoint(BaseModel):
    machine: str
    status: str = Field(pattern="^(ok|error|skipped)$")
    data: Any = None
    error: str | None = None
    duration_ms: int = Field(ge=0)
    completed_at: str


class WorkflowCheckpoint(BaseModel):
    run_id: str
    workflow: str
    steps: list[StepCheckpoint] = Field(default_factory=list)
    current_step: int = 0
    updated_at: str


def checkpoint_path(workspace_dir: Path, run_id: str) -> Path:
    return workspace_dir / ".coder" / f"checkpoint-{run_id}.json"


def load_checkpoint(workspace_dir: Path, run_id: str) -> WorkflowCheckpoint | None:
    path = checkpoint_path(workspace_dir, run_id)
    if not path.exists():
        return None
    try:
        return WorkflowCheckpoint.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError):
        return None


def save_checkpoint(workspace_dir: Path, checkpoint: WorkflowCheckpoint) -> Path:
    path = checkpoint_path(workspace_dir, checkpoint.run_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(checkpoint.model_dump_json(indent=2) + "\n", encoding="utf-8")
    return path


class CheckpointStore:
    """Appends step checkpoints, one writer at a time per run."""

    def __init__(self, workspace_dir: Path) -> None:
        self.workspace_dir = workspace_dir
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[run_id] = lock
        return lock

    async def append(self, run_id: str, workflow: str, step: StepResult) -> WorkflowCheckpoint:
        async with self._lock_for(run_id):
            existing = load_checkpoint(self.workspace_dir, run_id)
            if existing is None:
                existing = WorkflowCheckpoint(run_id=run_id, workflow=workflow, updated_at=utcnow_iso())
            now = utcnow_iso()
            existing.steps.append(
                StepCheckpoint(
                    machine=step.machine or "unknown",
                    status=step.status,
                    data=step.data,
                    error=step.error,
                    duration_ms=max(0, step.duration_ms),
                    completed_at=now,
                )
            )
            existing.current_step = len(existing.steps)
            existing.updated_at = now
            await asyncio.to_thread(save_checkpoint, self.workspace_dir, existing)
            return existing

    def forget(self, run_id: str) -> None:
        self._locks.pop(run_id, None)


async def append_step_checkpoint(
    workspace_dir: Path, run_id: str, workflow: str, step: StepResult
) -> WorkflowCheckpoint:
    return await CheckpointStore(workspace_dir).append(run_id, workflow, step)

