from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any, Literal

import httpx
import structlog

from coderflow.backends.base import TIMEOUT_EXIT_CODE, AgentAdapter, AgentResult, CallOptions
from coderflow.backends.sandbox import ProvisionedSession
from coderflow.config import CoderConfig

logger = structlog.get_logger()

ApiProvider = Literal["gemini", "anthropic"]
DEFAULT_API_TIMEOUT_MS = 60_000


class ApiAgent(AgentAdapter):
    """Direct HTTP calls to a hosted model, for classification and extraction."""

    def __init__(
        self,
        *,
        provider: ApiProvider,
        endpoint: str,
        api_key: str,
        model: str = "",
        system_prompt: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self.name = f"{provider}-api"
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.system_prompt = system_prompt
        self._transport = transport
        self._session: ProvisionedSession[httpx.AsyncClient] = ProvisionedSession(
            self._open_client, self._close_client, label=f"{self.name} client"
        )
        self._active: set[asyncio.Task[str]] = set()

    async def _open_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport)

    @staticmethod
    async def _close_client(client: httpx.AsyncClient) -> None:
        await client.aclose()

    async def execute(self, prompt: str, opts: CallOptions | None = None) -> AgentResult:
        opts = opts or CallOptions()
        timeout_ms = opts.timeout_ms or DEFAULT_API_TIMEOUT_MS
        client = await self._session.get()
        call = self._call_gemini if self.provider == "gemini" else self._call_anthropic
        task = asyncio.ensure_future(call(client, prompt))
        self._active.add(task)
        try:
            text = await asyncio.wait_for(task, timeout=timeout_ms / 1000)
        except TimeoutError:
            return AgentResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=f"API request timed out after {timeout_ms}ms",
            )
        except asyncio.CancelledError:
            if task.cancelled() and not self._caller_cancelling():
                return AgentResult(exit_code=1, stderr=f"{self.name} request aborted by kill()")
            raise
        except httpx.HTTPStatusError as exc:
            body = exc.response.text[:500]
            logger.debug(
                "api_agent_http_error", agent=self.name, status=exc.response.status_code
            )
            return AgentResult(
                exit_code=1,
                stderr=f"{self.name} {exc.response.status_code}: {body}",
            )
        except (httpx.HTTPError, ValueError) as exc:
            return AgentResult(exit_code=1, stderr=f"{self.name} request failed: {exc}")
        finally:
            self._active.discard(task)
        return AgentResult(exit_code=0, stdout=text)

    @staticmethod
    def _caller_cancelling() -> bool:
        current = asyncio.current_task()
        return current is not None and current.cancelling() > 0

    async def _call_gemini(self, client: httpx.AsyncClient, prompt: str) -> str:
        model = self.model or "gemini-2.5-flash"
        body: dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
        if self.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": self.system_prompt}]}
        response = await client.post(
            f"{self.endpoint}/models/{model}:generateContent",
            headers={"x-goog-api-key": self.api_key},
            json=body,
        )
        response.raise_for_status()
        data = response.json()
        candidates = data.get("candidates") or []
        parts = (candidates[0].get("content") or {}).get("parts") if candidates else None
        if not parts:
            raise ValueError("Gemini API returned empty response")
        return "".join(str(part.get("text", "")) for part in parts)

    async def _call_anthropic(self, client: httpx.AsyncClient, prompt: str) -> str:
        body: dict[str, Any] = {
            "model": self.model or "claude-sonnet-4-5",
            "max_tokens": 4096,
            "messages": [{"role": "user", "content": prompt}],
        }
        if self.system_prompt:
            body["system"] = self.system_prompt
        response = await client.post(
            f"{self.endpoint}/v1/messages",
            headers={"x-api-key": self.api_key, "anthropic-version": "2023-06-01"},
            json=body,
        )
        response.raise_for_status()
        blocks = response.json().get("content") or []
        if not blocks:
            raise ValueError("Anthropic API returned empty response")
        return "".join(str(block.get("text", "")) for block in blocks)

    async def kill(self) -> None:
        active = list(self._active)
        for task in active:
            task.cancel()
        if active:
            await asyncio.gather(*active, return_exceptions=True)
        self._active.clear()
        await self._session.kill()


def create_api_agent(
    config: CoderConfig,
    secrets: Mapping[str, str],
    *,
    provider: ApiProvider = "gemini",
    system_prompt: str = "",
    transport: httpx.AsyncBaseTransport | None = None,
) -> ApiAgent:
    models = config.models
    if provider == "gemini":
        return ApiAgent(
            provider="gemini",
            endpoint=models.gemini_api_endpoint,
            api_key=secrets.get(models.gemini_api_key_env, ""),
            model=models.gemini,
            system_prompt=system_prompt,
            transport=transport,
        )
    return ApiAgent(
        provider="anthropic",
        endpoint=models.anthropic_api_endpoint,
        api_key=secrets.get(models.anthropic_api_key_env, ""),
        model=models.claude,
        system_prompt=system_prompt,
        transport=transport,
    )
