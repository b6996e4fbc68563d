"""Lifecycle state machine for one workflow run.

``transition`` is pure: it never mutates its inputs and never raises. Events
that the current state does not accept, and every event in a terminal state,
return the same state and the same context object unchanged.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from coderflow.helpers import utcnow_iso
from coderflow.sqlite import MirrorStore
from coderflow.state.snapshots import WorkflowSnapshot, save_workflow_snapshot


class WorkflowState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {WorkflowState.COMPLETED, WorkflowState.FAILED, WorkflowState.CANCELLED}
)

SYNC_FIELDS = ("current_stage", "active_agent", "last_heartbeat_at")


@dataclass(frozen=True, slots=True)
class WorkflowEvent:
    type: str
    at: str | None = None
    run_id: str | None = None
    workspace: str | None = None
    goal: str = ""
    stage: str | None = None
    active_agent: str | None = None
    runner_pid: int | None = None
    error: str | None = None
    progress: Any = None


def initial_context(workflow: str = "develop") -> dict[str, Any]:
    return {
        "workflow": workflow,
        "run_id": None,
        "workspace": None,
        "goal": "",
        "active_agent": None,
        "current_stage": None,
        "runner_pid": None,
        "started_at": None,
        "completed_at": None,
        "last_heartbeat_at": None,
        "pause_requested_at": None,
        "cancel_requested_at": None,
        "error": None,
    }


Action = Callable[[dict[str, Any], WorkflowEvent], dict[str, Any]]


def _at(event: WorkflowEvent) -> str:
    return event.at or utcnow_iso()


def _init_run(context: dict[str, Any], event: WorkflowEvent) -> dict[str, Any]:
    _ = context
    started = _at(event)
    return {
        "run_id": event.run_id,
        "workspace": event.workspace,
        "goal": event.goal or "",
        "active_agent": event.active_agent,
        "current_stage": event.stage or "starting",
        "runner_pid": event.runner_pid,
        "started_at": started,
        "last_heartbeat_at": started,
        "completed_at": None,
        "pause_requested_at": None,
        "cancel_requested_at": None,
        "error": None,
    }


def _record_heartbeat(context: dict[str, Any], event: WorkflowEvent) -> dict[str, Any]:
    _ = context
    return {"last_heartbeat_at": _at(event)}


def _update_stage(context: dict[str, Any], event: WorkflowEvent) -> dict[str, Any]:
    return {
        "current_stage": event.stage or context.get("current_stage"),
        "active_agent": event.active_agent or context.get("active_agent"),
    }


def _well_formed_progress(progress: Any) -> bool:
    if not isinstance(progress, Mapping):
        return False
    if not any(key in progress for key in SYNC_FIELDS):
        return False
    return all(
        progress.get(key) is None or isinstance(progress.get(key), str) for key in SYNC_FIELDS
    )


def _sync_progress(context: dict[str, Any], event: WorkflowEvent) -> dict[str, Any]:
    progress = event.progress
    if not _well_formed_progress(progress):
        return {}
    return {
        "current_stage": progress.get("current_stage") or context.get("current_stage"),
        "active_agent": progress.get("active_agent") or context.get("active_agent"),
        "last_heartbeat_at": progress.get("last_heartbeat_at") or context.get("last_heartbeat_at"),
    }


def _mark_paused(context: dict[str, Any], event: WorkflowEvent) -> dict[str, Any]:
    _ = context
    return {"pause_requested_at": _at(event)}


def _mark_cancel_requested(context: dict[str, Any], event: WorkflowEvent) -> dict[str, Any]:
    _ = context
    return {"cancel_requested_at": _at(event)}


def _stamp_completed(context: dict[str, Any], event: WorkflowEvent) -> dict[str, Any]:
    _ = context
    return {"completed_at": _at(event)}


def _mark_failed(context: dict[str, Any], event: WorkflowEvent) -> dict[str, Any]:
    _ = context
    return {"completed_at": _at(event), "error": event.error or "unknown_error"}


def _noop(context: dict[str, Any], event: WorkflowEvent) -> dict[str, Any]:
    _ = context, event
    return {}


_S = WorkflowState
TRANSITIONS: dict[WorkflowState, dict[str, tuple[WorkflowState, Action]]] = {
    _S.IDLE: {
        "START": (_S.RUNNING, _init_run),
    },
    _S.RUNNING: {
        "HEARTBEAT": (_S.RUNNING, _record_heartbeat),
        "STAGE": (_S.RUNNING, _update_stage),
        "SYNC": (_S.RUNNING, _sync_progress),
        "PAUSE": (_S.PAUSED, _mark_paused),
        "CANCEL": (_S.CANCELLING, _mark_cancel_requested),
        "CANCELLED": (_S.CANCELLED, _stamp_completed),
        "COMPLETE": (_S.COMPLETED, _stamp_completed),
        "FAIL": (_S.FAILED, _mark_failed),
    },
    _S.PAUSED: {
        "HEARTBEAT": (_S.PAUSED, _record_heartbeat),
        "SYNC": (_S.PAUSED, _sync_progress),
        "RESUME": (_S.RUNNING, _noop),
        "CANCEL": (_S.CANCELLING, _mark_cancel_requested),
        "CANCELLED": (_S.CANCELLED, _stamp_completed),
        "COMPLETE": (_S.COMPLETED, _stamp_completed),
        "FAIL": (_S.FAILED, _mark_failed),
    },
    _S.CANCELLING: {
        "HEARTBEAT": (_S.CANCELLING, _record_heartbeat),
        "SYNC": (_S.CANCELLING, _sync_progress),
        "CANCELLED": (_S.CANCELLED, _stamp_completed),
        "COMPLETE": (_S.COMPLETED, _stamp_completed),
        "FAIL": (_S.FAILED, _mark_failed),
    },
}


def transition(
    state: WorkflowState, context: dict[str, Any], event: WorkflowEvent
) -> tuple[WorkflowState, dict[str, Any]]:
    if state in TERMINAL_STATES:
        return state, context
    handler = TRANSITIONS.get(state, {}).get(event.type)
    if handler is None:
        return state, context
    target, action = handler
    updates = action(context, event)
    if target == state and not updates:
        return state, context
    return target, {**context, **updates}


class WorkflowActor:
    """Holds the live state of one run and persists it after each accepted event."""

    def __init__(
        self,
        workspace_dir: Path,
        *,
        workflow: str = "develop",
        mirror: MirrorStore | None = None,
        state: WorkflowState = WorkflowState.IDLE,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.workspace_dir = workspace_dir
        self.workflow = workflow
        self.mirror = mirror
        self.state = state
        self.context = dict(context) if context is not None else initial_context(workflow)
        self.last_snapshot: WorkflowSnapshot | None = None

    @property
    def run_id(self) -> str | None:
        return self.context.get("run_id")

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def send(self, event: WorkflowEvent) -> bool:
        state, context = transition(self.state, self.context, event)
        if state is self.state and context is self.context:
            return False
        self.state, self.context = state, context
        if self.run_id:
            self.last_snapshot = save_workflow_snapshot(
                self.workspace_dir,
                run_id=self.run_id,
                workflow=self.workflow,
                value=self.state.value,
                context=self.context,
                mirror=self.mirror,
            )
        return True

    def snapshot(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "value": self.state.value,
            "context": dict(self.context),
        }
