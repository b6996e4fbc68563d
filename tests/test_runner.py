import asyncio
from pathlib import Path
from typing import Any

from pydantic import BaseModel
from structlog.testing import capture_logs

from coderflow.machines.base import (
    CancelToken,
    StepResult,
    StepValidationError,
    WorkflowContext,
    define_machine,
)
from coderflow.workflows.runner import RunState, Step, WorkflowRunner


class AddInput(BaseModel):
    a: int
    b: int


class DoubleInput(BaseModel):
    value: int


class EmptyInput(BaseModel):
    pass


async def _add(payload: AddInput, ctx: WorkflowContext) -> dict[str, Any]:
    _ = ctx
    return {"status": "ok", "data": {"sum": payload.a + payload.b}}


async def _double(payload: DoubleInput, ctx: WorkflowContext) -> dict[str, Any]:
    _ = ctx
    return {"status": "ok", "data": {"result": payload.value * 2}}


async def _explode(payload: EmptyInput, ctx: WorkflowContext) -> dict[str, Any]:
    _ = payload, ctx
    raise RuntimeError("intentional failure")


add_machine = define_machine(name="test.add", description="Adds numbers", input_model=AddInput, execute=_add)
double_machine = define_machine(
    name="test.double", description="Doubles a value", input_model=DoubleInput, execute=_double
)
fail_machine = define_machine(
    name="test.fail", description="Always fails", input_model=EmptyInput, execute=_explode
)


def _ctx(log: list[dict[str, Any]] | None = None) -> WorkflowContext:
    sink = log if log is not None else []
    return WorkflowContext(workspace_dir=Path("/tmp/test-workspace"), log=sink.append)


def test_runs_sequential_steps_with_input_mapper() -> None:
    runner = WorkflowRunner("test", _ctx())

    result = asyncio.run(
        runner.run(
            [
                Step(add_machine, lambda prev, state: {"a": 3, "b": 4}),
                Step(double_machine, lambda prev, state: {"value": prev.data["sum"]}),
            ]
        )
    )

    assert result.status == "completed"
    assert len(result.results) == 2
    assert result.results[0].data["sum"] == 7
    assert result.results[1].data["result"] == 14
    assert result.results[1].machine == "test.double"
    assert result.duration_ms >= 0
    assert result.run_id


def test_optional_step_error_does_not_stop_the_run() -> None:
    runner = WorkflowRunner("test", _ctx())

    result = asyncio.run(
        runner.run(
            [
                Step(fail_machine, lambda prev, state: {}, optional=True),
                Step(add_machine, lambda prev, state: {"a": 1, "b": 2}),
            ]
        )
    )

    assert result.status == "completed"
    assert result.results[0].status == "error"
    assert result.results[1].data["sum"] == 3


def test_non_optional_failure_halts_run() -> None:
    runner = WorkflowRunner("test", _ctx())

    result = asyncio.run(
        runner.run(
            [
                Step(fail_machine, lambda prev, state: {}),
                Step(add_machine, lambda prev, state: {"a": 1, "b": 2}),
            ]
        )
    )

    assert result.status == "failed"
    assert len(result.results) == 1
    assert "intentional failure" in (result.error or "")


def test_invalid_input_is_a_step_error_not_a_crash() -> None:
    runner = WorkflowRunner("test", _ctx())

    result = asyncio.run(runner.run([Step(add_machine, lambda prev, state: {"a": "three"})]))

    assert result.status == "failed"
    assert result.error is not None
    assert result.error.startswith("Invalid input for test.add")


def test_cancel_token_is_checked_before_each_step() -> None:
    log: list[dict[str, Any]] = []
    ctx = _ctx(log)

    async def _cancel_then_add(payload: AddInput, inner: WorkflowContext) -> dict[str, Any]:
        inner.cancel_token.cancel()
        return await _add(payload, inner)

    cancelling = define_machine(
        name="test.cancel", description="Requests cancel", input_model=AddInput, execute=_cancel_then_add
    )
    runner = WorkflowRunner("test", ctx)

    result = asyncio.run(
        runner.run(
            [
                Step(cancelling, lambda prev, state: {"a": 1, "b": 1}),
                Step(add_machine, lambda prev, state: {"a": 1, "b": 2}),
            ]
        )
    )

    assert result.status == "cancelled"
    assert len(result.results) == 1
    assert result.results[0].data["sum"] == 2
    assert log[-1]["event"] == "workflow_cancelled"
    assert log[-1]["at_step"] == 1


def test_callbacks_fire_around_each_step() -> None:
    calls: list[tuple[str, Any]] = []

    async def on_checkpoint(index: int, result: StepResult) -> None:
        calls.append(("checkpoint", (index, result.status)))

    runner = WorkflowRunner(
        "test",
        _ctx(),
        on_stage_change=lambda name: calls.append(("stage", name)),
        on_checkpoint=on_checkpoint,
    )

    seen_states: list[RunState] = []

    def mapper(prev: Any, state: RunState) -> dict[str, int]:
        seen_states.append(state)
        return {"value": prev.data["sum"]}

    asyncio.run(
        runner.run(
            [Step(add_machine, lambda prev, state: {"a": 2, "b": 2}), Step(double_machine, mapper)]
        )
    )

    assert calls == [
        ("stage", "test.add"),
        ("checkpoint", (0, "ok")),
        ("stage", "test.double"),
        ("checkpoint", (1, "ok")),
    ]
    assert seen_states[0].run_id == runner.run_id
    assert [result.machine for result in seen_states[0].results] == ["test.add"]


def test_first_mapper_receives_initial_input() -> None:
    runner = WorkflowRunner("test", _ctx())

    result = asyncio.run(
        runner.run([Step(add_machine, lambda prev, state: {"a": prev["x"], "b": 0})], {"x": 5})
    )

    assert result.results[0].data["sum"] == 5


def test_paused_run_waits_for_resume_with_heartbeats() -> None:
    ctx = _ctx()
    ctx.cancel_token = CancelToken(paused=True)
    beats: list[int] = []
    runner = WorkflowRunner(
        "test",
        ctx,
        on_heartbeat=lambda: beats.append(1),
        pause_poll_ms=10,
        heartbeat_interval_ms=1000,
    )

    async def _run() -> Any:
        task = asyncio.create_task(runner.run([Step(add_machine, lambda prev, state: {"a": 1, "b": 1})]))
        await asyncio.sleep(0.08)
        assert not task.done()
        ctx.cancel_token.resume()
        return await task

    result = asyncio.run(_run())

    assert result.status == "completed"
    assert beats


def test_pause_longer_than_limit_becomes_cancellation() -> None:
    ctx = _ctx()
    ctx.cancel_token = CancelToken(paused=True)
    runner = WorkflowRunner("test", ctx, pause_poll_ms=5, max_pause_ms=30)

    result = asyncio.run(runner.run([Step(add_machine, lambda prev, state: {"a": 1, "b": 1})]))

    assert result.status == "cancelled"
    assert result.results == []
    assert ctx.cancel_token.cancelled is True


def test_heartbeat_fires_while_a_step_runs() -> None:
    beats: list[int] = []

    async def _slow(payload: EmptyInput, ctx: WorkflowContext) -> dict[str, Any]:
        _ = payload, ctx
        await asyncio.sleep(0.12)
        return {"status": "ok"}

    slow = define_machine(name="test.slow", description="Sleeps", input_model=EmptyInput, execute=_slow)
    runner = WorkflowRunner("test", _ctx(), on_heartbeat=lambda: beats.append(1), heartbeat_interval_ms=20)

    result = asyncio.run(runner.run([Step(slow, lambda prev, state: {})]))

    assert result.status == "completed"
    assert len(beats) >= 2


def test_step_validation_error_carries_validation_kind() -> None:
    try:
        add_machine.validate({"a": 1})
    except StepValidationError as exc:
        assert exc.kind.value == "validation"
        assert exc.machine == "test.add"
    else:  # pragma: no cover
        raise AssertionError("validation should fail")


def test_failing_heartbeat_while_paused_does_not_abort_run() -> None:
    ctx = _ctx()
    ctx.cancel_token = CancelToken(paused=True)
    beats: list[int] = []

    def flaky_heartbeat() -> None:
        beats.append(1)
        if len(beats) == 2:
            ctx.cancel_token.resume()
        raise OSError("snapshot write failed")

    runner = WorkflowRunner(
        "test", ctx, on_heartbeat=flaky_heartbeat, pause_poll_ms=5, heartbeat_interval_ms=1000
    )

    with capture_logs() as logs:
        result = asyncio.run(runner.run([Step(add_machine, lambda prev, state: {"a": 1, "b": 1})]))

    assert result.status == "completed"
    assert result.results[0].data["sum"] == 2
    assert [entry["event"] for entry in logs].count("workflow_heartbeat_failed") == 2
