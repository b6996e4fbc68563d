from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from coderflow.machines.base import Machine, StepResult, WorkflowContext

logger = structlog.get_logger()

RunStatus = Literal["completed", "failed", "cancelled"]
DEFAULT_HEARTBEAT_INTERVAL_MS = 2000
DEFAULT_MAX_PAUSE_MS = 24 * 60 * 60 * 1000
PAUSE_POLL_MS = 1000


@dataclass(slots=True)
class RunState:
    run_id: str
    results: list[StepResult]


InputMapper = Callable[[Any, RunState], Any]
Callback = Callable[..., Awaitable[None] | None]


@dataclass(slots=True)
class Step:
    machine: Machine
    input_mapper: InputMapper
    optional: bool = False


@dataclass(slots=True)
class RunResult:
    status: RunStatus
    run_id: str
    duration_ms: int
    results: list[StepResult] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "run_id": self.run_id,
            "duration_ms": self.duration_ms,
            "results": [result.to_dict() for result in self.results],
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


async def _invoke(callback: Callback | None, *args: Any) -> None:
    if callback is None:
        return
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


class WorkflowRunner:
    """Runs machines strictly in order, feeding each result into the next input.

    The cancel token is checked before every step. A paused token blocks the
    next step (with heartbeats) until resumed, cancelled, or ``max_pause_ms``
    elapses, which counts as cancellation.
    """

    def __init__(
        self,
        name: str,
        ctx: WorkflowContext,
        *,
        on_stage_change: Callback | None = None,
        on_heartbeat: Callback | None = None,
        on_checkpoint: Callback | None = None,
        heartbeat_interval_ms: int | None = None,
        max_pause_ms: int | None = None,
        pause_poll_ms: int = PAUSE_POLL_MS,
        run_id: str | None = None,
    ) -> None:
        self.name = name
        self.ctx = ctx
        self.on_stage_change = on_stage_change
        self.on_heartbeat = on_heartbeat
        self.on_checkpoint = on_checkpoint
        workflow_cfg = ctx.config.workflow
        self.heartbeat_interval_ms = heartbeat_interval_ms or workflow_cfg.heartbeat_interval_ms
        self.max_pause_ms = max_pause_ms if max_pause_ms is not None else workflow_cfg.max_pause_ms
        self.pause_poll_ms = pause_poll_ms
        self.run_id = run_id or uuid.uuid4().hex[:8]
        self.results: list[StepResult] = []

    def _result(self, status: RunStatus, started: float, error: str | None = None) -> RunResult:
        return RunResult(
            status=status,
            run_id=self.run_id,
            duration_ms=int((time.monotonic() - started) * 1000),
            results=list(self.results),
            error=error,
        )

    async def run(self, steps: list[Step], initial_input: Any = None) -> RunResult:
        started = time.monotonic()
        self.results = []
        heartbeat = asyncio.create_task(self._heartbeat_loop())
        try:
            return await self._run_steps(steps, initial_input, started)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _run_steps(self, steps: list[Step], initial_input: Any, started: float) -> RunResult:
        token = self.ctx.cancel_token
        previous = initial_input
        for index, step in enumerate(steps):
            if not token.cancelled and token.paused:
                await self._wait_for_resume()
            if token.cancelled:
                self.ctx.log(
                    {
                        "event": "workflow_cancelled",
                        "workflow": self.name,
                        "run_id": self.run_id,
                        "at_step": index,
                    }
                )
                return self._result("cancelled", started)

            machine_name = step.machine.name
            await _invoke(self.on_stage_change, machine_name)
            self.ctx.log(
                {
                    "event": "machine_start",
                    "workflow": self.name,
                    "run_id": self.run_id,
                    "machine": machine_name,
                    "step_index": index,
                }
            )

            state = RunState(run_id=self.run_id, results=list(self.results))
            try:
                step_input = step.input_mapper(previous, state)
            except Exception as exc:
                result = StepResult(status="error", error=f"Input mapping failed: {exc}")
            else:
                result = await step.machine.run(step_input, self.ctx)
            result.machine = machine_name

            self.results.append(result)
            await _invoke(self.on_checkpoint, index, result)
            self.ctx.log(
                {
                    "event": "machine_complete",
                    "workflow": self.name,
                    "run_id": self.run_id,
                    "machine": machine_name,
                    "status": result.status,
                    "duration_ms": result.duration_ms,
                    "error": result.error,
                }
            )

            if result.status == "error" and not step.optional:
                return self._result("failed", started, error=result.error)
            previous = result

        return self._result("completed", started)

    async def _heartbeat_loop(self) -> None:
        interval = self.heartbeat_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            await self._beat()

    async def _beat(self) -> None:
        try:
            await _invoke(self.on_heartbeat)
        except Exception as exc:
            logger.warning("workflow_heartbeat_failed", workflow=self.name, error=str(exc))

    async def _wait_for_resume(self) -> None:
        token = self.ctx.cancel_token
        paused_at = time.monotonic()
        while token.paused and not token.cancelled:
            if (time.monotonic() - paused_at) * 1000 > self.max_pause_ms:
                logger.warning("workflow_pause_expired", workflow=self.name, run_id=self.run_id)
                token.cancelled = True
                break
            await asyncio.sleep(self.pause_poll_ms / 1000)
            await self._beat()
