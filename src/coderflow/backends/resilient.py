from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from coderflow.backends.base import (
    AgentAbortedError,
    AgentAdapter,
    AgentError,
    AgentResult,
    CallOptions,
    StructuredResult,
    to_structured,
)
from coderflow.backends.classify import classify_exception, classify_result
from coderflow.config import RetryConfig
from coderflow.helpers import truncate

logger = structlog.get_logger()

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    retries: int = 1
    backoff_ms: int = 5000
    retry_on_rate_limit: bool = True
    factor: int = 2

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            retries=max(0, int(config.retries)),
            backoff_ms=max(0, int(config.backoff_ms)),
            retry_on_rate_limit=bool(config.retry_on_rate_limit),
        )

    def delay_seconds(self, attempt: int) -> float:
        return self.backoff_ms * (self.factor ** (attempt - 1)) / 1000


class RetryFallbackAgent(AgentAdapter):
    """Wraps a primary adapter with bounded retry and a single fallback attempt."""

    def __init__(
        self,
        primary: AgentAdapter,
        *,
        policy: RetryPolicy,
        fallback: AgentAdapter | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.policy = policy
        self.event_hook = event_hook
        self.name = primary.name
        self._kill_generation = 0

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def execute(self, prompt: str, opts: CallOptions | None = None) -> AgentResult:
        return await self._run_with_fallback(
            "execute", lambda adapter: adapter.execute(prompt, opts)
        )

    async def execute_structured(
        self, prompt: str, opts: CallOptions | None = None
    ) -> StructuredResult:
        result = await self._run_with_fallback(
            "execute_structured", lambda adapter: adapter.execute_structured(prompt, opts)
        )
        return to_structured(result)

    async def _run_with_fallback(
        self,
        call_name: str,
        call: Callable[[AgentAdapter], Awaitable[AgentResult]],
    ) -> AgentResult:
        generation = self._kill_generation
        try:
            return await self._call_with_retry(self.primary, call_name, call, generation)
        except AgentError as exc:
            if self.fallback is None or isinstance(exc, AgentAbortedError):
                raise
            self._emit(
                {
                    "event": "backend_failover_start",
                    "backend": self.fallback.name,
                    "call": call_name,
                    "error": str(exc),
                    "kind": exc.kind.value,
                }
            )
            logger.warning(
                "agent_fallback",
                primary=self.primary.name,
                fallback=self.fallback.name,
                call=call_name,
                kind=exc.kind.value,
            )

        self._check_aborted(self.fallback, generation, call_name)
        result = await self._attempt(self.fallback, call)
        self._check_aborted(self.fallback, generation, call_name)
        if isinstance(result, AgentError):
            raise result
        self._emit(
            {"event": "backend_fallback_success", "backend": self.fallback.name, "call": call_name}
        )
        return result

    async def _attempt(
        self,
        adapter: AgentAdapter,
        call: Callable[[AgentAdapter], Awaitable[AgentResult]],
    ) -> AgentResult | AgentError:
        try:
            result = await call(adapter)
        except Exception as exc:
            return classify_exception(exc, backend=adapter.name)
        if result.exit_code == 0:
            return result
        return classify_result(
            result,
            backend=adapter.name,
            retry_on_rate_limit=self.policy.retry_on_rate_limit,
        )

    async def _call_with_retry(
        self,
        adapter: AgentAdapter,
        call_name: str,
        call: Callable[[AgentAdapter], Awaitable[AgentResult]],
        generation: int,
    ) -> AgentResult:
        attempts = self.policy.retries + 1
        for attempt in range(attempts):
            if attempt > 0:
                delay = self.policy.delay_seconds(attempt)
                self._emit(
                    {
                        "event": "backend_retry",
                        "backend": adapter.name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "call": call_name,
                    }
                )
                await asyncio.sleep(delay)
                self._check_aborted(adapter, generation, call_name)

            outcome = await self._attempt(adapter, call)
            if not isinstance(outcome, AgentError):
                return outcome
            self._check_aborted(adapter, generation, call_name)

            retries_left = attempts - attempt - 1
            self._emit(
                {
                    "event": "backend_attempt_failed",
                    "backend": adapter.name,
                    "attempt": attempt,
                    "call": call_name,
                    "error": str(outcome),
                    "kind": outcome.kind.value,
                    "retriable": outcome.retriable,
                }
            )
            logger.warning(
                "agent_retry",
                backend=adapter.name,
                attempt=attempt + 1,
                retries_left=retries_left if outcome.retriable else 0,
                kind=outcome.kind.value,
                error=truncate(str(outcome), 200),
            )
            if not outcome.retriable or retries_left == 0:
                raise outcome
        raise AssertionError("unreachable")

    def _check_aborted(self, adapter: AgentAdapter, generation: int, call_name: str) -> None:
        if generation != self._kill_generation:
            raise AgentAbortedError(
                f"{adapter.name} {call_name} aborted by kill()", backend=adapter.name
            )

    async def kill(self) -> None:
        # Calls started before this point stop retrying and skip the fallback.
        self._kill_generation += 1
        kills = [self.primary.kill()]
        if self.fallback is not None:
            kills.append(self.fallback.kill())
        await asyncio.gather(*kills, return_exceptions=True)
