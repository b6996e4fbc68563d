from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from coderflow.helpers import extract_json

TIMEOUT_EXIT_CODE = 124


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    FATAL = "fatal"
    VALIDATION = "validation"


class AgentError(RuntimeError):
    """Raised when an agent call fails; ``kind`` decides retry behaviour."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        if kind is not None:
            self.kind = kind

    @property
    def retriable(self) -> bool:
        return self.kind in {ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED}


class TransientAgentError(AgentError):
    """Network-level failures, 5xx-like responses, generic non-zero exits."""


class RateLimitedError(AgentError):
    kind = ErrorKind.RATE_LIMITED


class AgentTimeoutError(AgentError):
    kind = ErrorKind.FATAL


class AgentStartupError(AgentError):
    """Raised when the backing process or connection cannot be provisioned."""

    kind = ErrorKind.FATAL


class AgentAbortedError(AgentError):
    """Raised when kill() lands while a call is in flight."""

    kind = ErrorKind.FATAL


class FatalStderrError(AgentError):
    def __init__(
        self,
        message: str,
        *,
        category: str,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        kind = ErrorKind.FATAL if category == "auth" else ErrorKind.TRANSIENT
        super().__init__(message, backend=backend, exit_code=exit_code, kind=kind)
        self.category = category


@dataclass(slots=True)
class CallOptions:
    timeout_ms: int | None = None
    session_id: str | None = None
    resume_id: str | None = None


@dataclass(slots=True)
class AgentResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class StructuredResult(AgentResult):
    parsed: Any = None
    parse_error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AgentAdapter(ABC):
    """Contract every agent backend implements.

    ``execute`` reports failures through the result's exit code and captured
    output; it only raises for failures that have no result at all (startup).
    """

    name: str = "agent"

    @abstractmethod
    async def execute(self, prompt: str, opts: CallOptions | None = None) -> AgentResult:
        """Run one prompt and return captured output."""

    async def execute_structured(
        self, prompt: str, opts: CallOptions | None = None
    ) -> StructuredResult:
        result = await self.execute(prompt, opts)
        return to_structured(result)

    async def kill(self) -> None:
        """Abort in-flight work and release backing resources. Idempotent."""


def to_structured(result: AgentResult) -> StructuredResult:
    if isinstance(result, StructuredResult):
        return result
    parsed: Any = None
    parse_error: str | None = None
    if result.stdout.strip():
        try:
            parsed = extract_json(result.stdout)
        except ValueError as exc:
            parse_error = str(exc)
    elif result.exit_code == 0:
        parse_error = "Empty response from agent"
    return StructuredResult(
        exit_code=result.exit_code,
        stdout=result.stdout,
        stderr=result.stderr,
        parsed=parsed,
        parse_error=parse_error,
    )
