from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ValidationError

from coderflow.backends.base import ErrorKind
from coderflow.config import CoderConfig

if TYPE_CHECKING:
    from coderflow.backends.pool import AgentPool

StepStatus = Literal["ok", "error"]
LogFn = Callable[[dict[str, Any]], None]


def _discard(event: dict[str, Any]) -> None:
    _ = event


class StepValidationError(ValueError):
    """Raised when a step's input does not satisfy its declared model."""

    kind = ErrorKind.VALIDATION

    def __init__(self, machine: str, detail: str) -> None:
        super().__init__(f"Invalid input for {machine}: {detail}")
        self.machine = machine
        self.detail = detail


@dataclass(slots=True)
class CancelToken:
    cancelled: bool = False
    paused: bool = False

    def cancel(self) -> None:
        self.cancelled = True

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False


@dataclass(slots=True)
class WorkflowContext:
    workspace_dir: Path
    config: CoderConfig = field(default_factory=CoderConfig.default)
    agent_pool: AgentPool | None = None
    log: LogFn = _discard
    cancel_token: CancelToken = field(default_factory=CancelToken)
    secrets: dict[str, str] = field(default_factory=dict)
    repo_path: str = "."

    @property
    def artifacts_dir(self) -> Path:
        return self.workspace_dir / ".coder" / "artifacts"

    @property
    def scratchpad_dir(self) -> Path:
        return self.workspace_dir / self.config.workflow.scratchpad_dir


@dataclass(slots=True)
class StepResult:
    status: StepStatus
    data: Any = None
    error: str | None = None
    duration_ms: int = 0
    machine: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status, "duration_ms": self.duration_ms}
        if self.machine is not None:
            payload["machine"] = self.machine
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        return payload


ExecuteFn = Callable[[Any, WorkflowContext], Awaitable[StepResult | dict[str, Any]]]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _coerce_result(raw: StepResult | dict[str, Any] | None) -> StepResult:
    if isinstance(raw, StepResult):
        return raw
    if not isinstance(raw, dict):
        return StepResult(status="ok", data=raw)
    if "status" not in raw:
        # Bare payloads such as {"sum": 7} are the step's data.
        return StepResult(status="ok", data=raw)
    status = raw["status"]
    if status not in ("ok", "error"):
        return StepResult(status="error", error=f"Invalid step status: {status!r}")
    return StepResult(status=status, data=raw.get("data"), error=raw.get("error"))


@dataclass(frozen=True, slots=True)
class Machine:
    """One named workflow step with a validated input contract."""

    name: str
    description: str
    input_model: type[BaseModel]
    execute: ExecuteFn

    def validate(self, raw_input: Any) -> BaseModel:
        if isinstance(raw_input, self.input_model):
            return raw_input
        try:
            return self.input_model.model_validate(raw_input if raw_input is not None else {})
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
                for err in exc.errors()
            )
            raise StepValidationError(self.name, details) from exc

    async def run(self, raw_input: Any, ctx: WorkflowContext) -> StepResult:
        started = time.monotonic()
        try:
            validated = self.validate(raw_input)
            result = _coerce_result(await self.execute(validated, ctx))
        except Exception as exc:
            return StepResult(status="error", error=str(exc), duration_ms=_elapsed_ms(started))
        result.duration_ms = _elapsed_ms(started)
        return result


def define_machine(
    *,
    name: str,
    description: str,
    input_model: type[BaseModel] | None,
    execute: ExecuteFn | None,
) -> Machine:
    if not name:
        raise ValueError("Machine name is required")
    if not description:
        raise ValueError(f"Machine {name}: description is required")
    if input_model is None:
        raise ValueError(f"Machine {name}: input_model is required")
    if not callable(execute):
        raise ValueError(f"Machine {name}: execute function is required")
    return Machine(name=name, description=description, input_model=input_model, execute=execute)
