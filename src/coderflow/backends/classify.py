"""Single classification step from a failed call to a closed set of error kinds.

Retry and fallback logic switches on ``AgentError.kind`` and never re-reads
captured output.
"""

from __future__ import annotations

import asyncio
import re

import httpx

from coderflow.backends.base import (
    TIMEOUT_EXIT_CODE,
    AgentError,
    AgentResult,
    AgentStartupError,
    AgentTimeoutError,
    FatalStderrError,
    RateLimitedError,
    TransientAgentError,
)
from coderflow.helpers import truncate

RATE_LIMIT_PATTERN = re.compile(
    r"rate[\s_-]?limit|\b429\b|too many requests|quota exceeded|resource[\s_]exhausted"
    r"|overloaded",
    re.IGNORECASE,
)
AUTH_PATTERN = re.compile(
    r"\b401\b|unauthori[sz]ed|invalid[\s_-]?api[\s_-]?key|authentication (?:failed|error)"
    r"|not logged in|please (?:log|sign) ?in|missing api key",
    re.IGNORECASE,
)


def is_rate_limit_text(text: str) -> bool:
    return bool(RATE_LIMIT_PATTERN.search(text))


def is_auth_failure_text(text: str) -> bool:
    return bool(AUTH_PATTERN.search(text))


def classify_result(
    result: AgentResult,
    *,
    backend: str | None = None,
    retry_on_rate_limit: bool = True,
) -> AgentError:
    """Turn a non-zero result into the matching ``AgentError``."""
    details = f"{result.stderr or ''}\n{result.stdout or ''}".strip()
    message = truncate(details, 300) or "Agent execution failed"
    exit_code = result.exit_code

    if exit_code == TIMEOUT_EXIT_CODE:
        return AgentTimeoutError(message, backend=backend, exit_code=exit_code)
    if is_auth_failure_text(result.stderr or ""):
        return FatalStderrError(message, category="auth", backend=backend, exit_code=exit_code)
    if retry_on_rate_limit and is_rate_limit_text(details):
        return RateLimitedError(f"Rate limited: {message}", backend=backend, exit_code=exit_code)
    return TransientAgentError(message, backend=backend, exit_code=exit_code)


def classify_exception(exc: BaseException, *, backend: str | None = None) -> AgentError:
    if isinstance(exc, AgentError):
        return exc
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return AgentTimeoutError(str(exc) or "Agent call timed out", backend=backend)
    if isinstance(exc, FileNotFoundError):
        return AgentStartupError(str(exc), backend=backend)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        text = truncate(exc.response.text or str(exc), 300)
        if status == 429:
            return RateLimitedError(f"Rate limited: {text}", backend=backend)
        if status in {401, 403}:
            return FatalStderrError(text, category="auth", backend=backend)
        return TransientAgentError(text, backend=backend)
    return TransientAgentError(truncate(str(exc), 300) or type(exc).__name__, backend=backend)
