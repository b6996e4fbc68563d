import asyncio
from pathlib import Path

from coderflow.machines.base import StepResult
from coderflow.state.checkpoints import (
    CheckpointStore,
    append_step_checkpoint,
    checkpoint_path,
    load_checkpoint,
)


def test_concurrent_appends_for_one_run_are_serialised(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)

    async def _run() -> None:
        await asyncio.gather(
            *(
                store.append(
                    "run-1",
                    "develop",
                    StepResult(status="ok", data={"n": index}, duration_ms=index, machine=f"m{index}"),
                )
                for index in range(8)
            )
        )

    asyncio.run(_run())
    checkpoint = load_checkpoint(tmp_path, "run-1")

    assert checkpoint is not None
    assert checkpoint.current_step == 8
    assert sorted(step.machine for step in checkpoint.steps) == [f"m{index}" for index in range(8)]


def test_append_records_errors_and_missing_checkpoint_is_none(tmp_path: Path) -> None:
    assert load_checkpoint(tmp_path, "nope") is None

    checkpoint = asyncio.run(
        append_step_checkpoint(
            tmp_path,
            "run-2",
            "research",
            StepResult(status="error", error="boom", duration_ms=12, machine="research.fetch"),
        )
    )

    assert checkpoint.workflow == "research"
    assert checkpoint.steps[0].error == "boom"
    assert checkpoint_path(tmp_path, "run-2").exists()


def test_invalid_checkpoint_file_is_ignored(tmp_path: Path) -> None:
    path = checkpoint_path(tmp_path, "run-3")
    path.parent.mkdir(parents=True)
    path.write_text('{"run_id": "run-3"}', encoding="utf-8")

    assert load_checkpoint(tmp_path, "run-3") is None
