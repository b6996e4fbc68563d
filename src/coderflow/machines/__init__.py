from coderflow.machines.base import (
    CancelToken,
    Machine,
    StepResult,
    StepValidationError,
    WorkflowContext,
    define_machine,
)
from coderflow.machines.registry import MachineRegistry

__all__ = [
    "CancelToken",
    "Machine",
    "MachineRegistry",
    "StepResult",
    "StepValidationError",
    "WorkflowContext",
    "define_machine",
]
