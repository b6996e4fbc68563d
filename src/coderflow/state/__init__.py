from coderflow.state.checkpoints import CheckpointStore, append_step_checkpoint, load_checkpoint
from coderflow.state.machine import (
    TERMINAL_STATES,
    WorkflowActor,
    WorkflowEvent,
    WorkflowState,
    initial_context,
    transition,
)
from coderflow.state.scratchpad import ScratchpadPersistence
from coderflow.state.snapshots import (
    WorkflowSnapshot,
    WorkflowStateError,
    detect_staleness,
    load_workflow_snapshot,
    mark_run_terminal,
    save_workflow_snapshot,
    save_workflow_terminal_state,
)
from coderflow.state.start_lock import (
    LockOptions,
    StartLockBusyError,
    acquire_start_lock,
    release_start_lock,
    start_lock,
    with_start_lock,
)

__all__ = [
    "TERMINAL_STATES",
    "CheckpointStore",
    "LockOptions",
    "ScratchpadPersistence",
    "StartLockBusyError",
    "WorkflowActor",
    "WorkflowEvent",
    "WorkflowSnapshot",
    "WorkflowState",
    "WorkflowStateError",
    "acquire_start_lock",
    "append_step_checkpoint",
    "detect_staleness",
    "initial_context",
    "load_checkpoint",
    "load_workflow_snapshot",
    "mark_run_terminal",
    "release_start_lock",
    "save_workflow_snapshot",
    "save_workflow_terminal_state",
    "start_lock",
    "transition",
    "with_start_lock",
]
