"""Workspace-scoped start lock shared by every process on this host.

The lock is a JSON record ``{token, pid, createdAt}`` created with
``O_CREAT | O_EXCL``. Release only removes the file while it still carries
the caller's token, so a holder that was evicted as stale never deletes the
lock of whoever acquired it afterwards.
"""

from __future__ import annotations

import asyncio
import json
import os
import random
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import structlog

from coderflow.config import LockConfig
from coderflow.helpers import age_ms, is_pid_alive, utcnow_iso

logger = structlog.get_logger()

T = TypeVar("T")


class StartLockBusyError(RuntimeError):
    def __init__(self, lock_path: Path, timeout_ms: int) -> None:
        super().__init__(
            f"workflow start lock busy: could not acquire {lock_path} within {timeout_ms}ms"
        )
        self.lock_path = lock_path
        self.timeout_ms = timeout_ms


@dataclass(slots=True)
class LockOptions:
    timeout_ms: int = 5000
    stale_ms: int = 60_000
    retry_interval_ms: int = 200
    corrupt_min_age_ms: int = 2000

    @classmethod
    def from_config(cls, config: LockConfig) -> LockOptions:
        return cls(
            timeout_ms=config.timeout_ms,
            stale_ms=config.stale_ms,
            retry_interval_ms=config.retry_interval_ms,
            corrupt_min_age_ms=config.corrupt_min_age_ms,
        )


@dataclass(slots=True)
class LockHandle:
    path: Path
    token: str


def lock_path_for(workspace_dir: Path) -> Path:
    return workspace_dir / ".coder" / "start.lock"


def read_lock_record(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _try_create(path: Path, token: str) -> bool:
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    record = {"token": token, "pid": os.getpid(), "createdAt": utcnow_iso()}
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(record))
    return True


def _created_at(record: dict[str, Any]) -> Any:
    return record.get("createdAt", record.get("created_at"))


def _unlink(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def evict_stale_lock(path: Path, options: LockOptions) -> bool:
    """Delete the lock file if its holder is gone or it is too old."""
    record = read_lock_record(path)
    age = age_ms(_created_at(record)) if record is not None else None
    alive = is_pid_alive(record.get("pid")) if record is not None else None
    if record is None or (age is None and alive is None):
        # Unparsable or no usable pid/timestamp: a writer may still be mid-write.
        try:
            mtime_age_ms = (time.time() - path.stat().st_mtime) * 1000
        except FileNotFoundError:
            return True
        if mtime_age_ms <= options.corrupt_min_age_ms:
            return False
        reason = "corrupt"
    else:
        if alive is False:
            reason = "pid_not_alive"
        elif age is not None and age > options.stale_ms:
            reason = "expired"
        else:
            return False

    evicted = _unlink(path)
    if evicted:
        logger.info(
            "start_lock_evicted",
            path=str(path),
            reason=reason,
            pid=(record or {}).get("pid"),
        )
    return evicted


async def acquire_start_lock(
    workspace_dir: Path, options: LockOptions | None = None
) -> LockHandle:
    options = options or LockOptions()
    path = lock_path_for(workspace_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    token = uuid.uuid4().hex
    deadline = time.monotonic() + options.timeout_ms / 1000

    while time.monotonic() < deadline:
        if _try_create(path, token):
            return LockHandle(path=path, token=token)
        if evict_stale_lock(path, options):
            continue
        delay = options.retry_interval_ms / 1000 * random.uniform(0.5, 1.5)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        await asyncio.sleep(min(delay, remaining))

    raise StartLockBusyError(path, options.timeout_ms)


def release_start_lock(handle: LockHandle) -> bool:
    record = read_lock_record(handle.path)
    if record is None or record.get("token") != handle.token:
        return False
    try:
        handle.path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning("start_lock_release_failed", path=str(handle.path), error=str(exc))
        return False
    return True


@asynccontextmanager
async def start_lock(
    workspace_dir: Path, options: LockOptions | None = None
) -> AsyncIterator[LockHandle]:
    handle = await acquire_start_lock(workspace_dir, options)
    try:
        yield handle
    finally:
        release_start_lock(handle)


async def with_start_lock(
    workspace_dir: Path,
    fn: Callable[[], Awaitable[T]],
    options: LockOptions | None = None,
) -> T:
    async with start_lock(workspace_dir, options):
        return await fn()
