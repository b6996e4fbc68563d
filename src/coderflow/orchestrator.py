from __future__ import annotations

import asyncio
import os
import sqlite3
import uuid
from pathlib import Path
from typing import Any

import httpx
import structlog

from coderflow.backends.pool import AgentPool
from coderflow.backends.sandbox import HostSandboxProvider
from coderflow.config import CoderConfig, config_path_for, load_config
from coderflow.helpers import build_secrets
from coderflow.logging import EventLog
from coderflow.machines.base import CancelToken, StepResult, WorkflowContext
from coderflow.machines.registry import MachineRegistry
from coderflow.sqlite import MirrorStore
from coderflow.state.checkpoints import CheckpointStore
from coderflow.state.machine import WorkflowActor, WorkflowEvent
from coderflow.state.scratchpad import ScratchpadPersistence
from coderflow.state.snapshots import (
    ACTIVE_VALUES,
    WorkflowStateError,
    detect_staleness,
    load_workflow_snapshot,
    mark_run_terminal,
)
from coderflow.state.start_lock import LockOptions, start_lock
from coderflow.workflows.runner import RunResult, Step, WorkflowRunner

logger = structlog.get_logger()


class Orchestrator:
    """One workspace session: start lock, agent pool, state actor, runner, logs.

    Everything the session opens is owned here and released by ``aclose``.
    """

    def __init__(
        self,
        workspace_dir: Path,
        config: CoderConfig | None = None,
        *,
        workflow: str = "develop",
        secrets: dict[str, str] | None = None,
        provider: HostSandboxProvider | None = None,
        api_transport: httpx.AsyncBaseTransport | None = None,
        lock_options: LockOptions | None = None,
    ) -> None:
        self.workspace_dir = workspace_dir.resolve()
        self.config = config or load_config(config_path_for(self.workspace_dir))
        self.workflow = workflow
        (self.workspace_dir / ".coder").mkdir(parents=True, exist_ok=True)

        workflow_cfg = self.config.workflow
        self.lock_options = lock_options or LockOptions.from_config(self.config.lock)
        self.secrets = secrets if secrets is not None else build_secrets(self.config.pass_env)
        self.log = EventLog(self.workspace_dir, "coder")
        self.agent_log = EventLog(self.workspace_dir, "agents")
        self.mirror = self._open_mirror() if workflow_cfg.sqlite_sync else None
        self.cancel_token = CancelToken()
        self.registry = MachineRegistry()
        self.checkpoints = CheckpointStore(self.workspace_dir)
        self.scratchpad = ScratchpadPersistence(
            self.workspace_dir,
            self.workspace_dir / workflow_cfg.scratchpad_dir,
            self.workspace_dir / workflow_cfg.sqlite_path,
            sqlite_sync=workflow_cfg.sqlite_sync,
        )
        self.pool = AgentPool(
            self.config,
            self.workspace_dir,
            secrets=self.secrets,
            provider=provider,
            event_hook=self.agent_log,
            api_transport=api_transport,
        )
        self.actor: WorkflowActor | None = None
        self._closed = False

    def _open_mirror(self) -> MirrorStore | None:
        try:
            return MirrorStore(self.workspace_dir / self.config.workflow.sqlite_path)
        except (sqlite3.Error, OSError) as exc:
            logger.warning("sqlite_mirror_failed", table="workflow_runs", error=str(exc))
            return None

    async def __aenter__(self) -> Orchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def context(self) -> WorkflowContext:
        return WorkflowContext(
            workspace_dir=self.workspace_dir,
            config=self.config,
            agent_pool=self.pool,
            log=self.log,
            cancel_token=self.cancel_token,
            secrets=self.secrets,
        )

    def _send(self, event_type: str, **fields: Any) -> None:
        if self.actor is not None:
            self.actor.send(WorkflowEvent(type=event_type, **fields))

    def request_cancel(self) -> None:
        self.cancel_token.cancel()
        self._send("CANCEL")

    def request_pause(self) -> None:
        self.cancel_token.pause()
        self._send("PAUSE")

    def request_resume(self) -> None:
        self.cancel_token.resume()
        self._send("RESUME")

    async def set_repo_root(self, repo_root: Path) -> None:
        await self.pool.set_repo_root(repo_root)

    async def _begin_run(self, goal: str) -> WorkflowActor:
        async with start_lock(self.workspace_dir, self.lock_options):
            existing = load_workflow_snapshot(self.workspace_dir, mirror=self.mirror)
            if existing is not None and existing.value in ACTIVE_VALUES:
                staleness = detect_staleness(existing)
                # A live runner pid owns the workspace even when its heartbeat lags.
                if not staleness.is_stale or staleness.runner_alive:
                    raise WorkflowStateError(
                        f"workflow already running in {self.workspace_dir}: run {existing.run_id}"
                    )
                mark_run_terminal(self.workspace_dir, existing.run_id, "failed", mirror=self.mirror)
                self.log({"event": "stale_run_marked_failed", "run_id": existing.run_id, "reason": staleness.reason})

            actor = WorkflowActor(self.workspace_dir, workflow=self.workflow, mirror=self.mirror)
            actor.send(
                WorkflowEvent(
                    type="START",
                    run_id=uuid.uuid4().hex[:8],
                    workspace=str(self.workspace_dir),
                    goal=goal,
                    runner_pid=os.getpid(),
                )
            )
            return actor

    async def run_workflow(
        self,
        steps: list[Step],
        *,
        goal: str = "",
        initial_input: Any = None,
    ) -> RunResult:
        if self._closed:
            raise WorkflowStateError("orchestrator session is closed")
        self.cancel_token = CancelToken()
        actor = await self._begin_run(goal)
        self.actor = actor
        run_id = actor.run_id or uuid.uuid4().hex[:8]

        async def on_checkpoint(index: int, result: StepResult) -> None:
            _ = index
            await self.checkpoints.append(run_id, self.workflow, result)

        runner = WorkflowRunner(
            self.workflow,
            self.context(),
            on_stage_change=lambda stage: actor.send(WorkflowEvent(type="STAGE", stage=stage)),
            on_heartbeat=lambda: actor.send(WorkflowEvent(type="HEARTBEAT")),
            on_checkpoint=on_checkpoint,
            run_id=run_id,
        )
        self.log({"event": "workflow_start", "workflow": self.workflow, "run_id": run_id, "goal": goal})
        try:
            result = await runner.run(steps, initial_input)
        except asyncio.CancelledError:
            actor.send(WorkflowEvent(type="CANCELLED"))
            raise
        except Exception as exc:
            actor.send(WorkflowEvent(type="FAIL", error=str(exc)))
            raise
        finally:
            self.checkpoints.forget(run_id)

        if result.status == "completed":
            actor.send(WorkflowEvent(type="COMPLETE"))
        elif result.status == "failed":
            actor.send(WorkflowEvent(type="FAIL", error=result.error))
        else:
            actor.send(WorkflowEvent(type="CANCELLED"))
        self.log(
            {
                "event": "workflow_finish",
                "workflow": self.workflow,
                "run_id": run_id,
                "status": result.status,
                "duration_ms": result.duration_ms,
            }
        )
        return result

    def status(self) -> dict[str, Any]:
        return workspace_status(self.workspace_dir, mirror=self.mirror)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.pool.drain()
        finally:
            self.log.close()
            self.agent_log.close()


def workspace_status(workspace_dir: Path, *, mirror: MirrorStore | None = None) -> dict[str, Any]:
    snapshot = load_workflow_snapshot(workspace_dir, mirror=mirror)
    if snapshot is None:
        return {"workspace": str(workspace_dir), "run": None}
    return {
        "workspace": str(workspace_dir),
        "run": snapshot.to_dict(),
        "staleness": detect_staleness(snapshot).to_dict(),
    }
