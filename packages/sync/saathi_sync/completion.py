"""
Completion Service client (OpenAI-compatible chat-completions gateway).

Maps gateway failures onto a small error taxonomy so callers can show the
right message: 429 means rate limited, 402 means the workspace is out of
credits, anything else is a generic completion failure.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from .metrics import MetricsCollector

log = structlog.get_logger()


class CompletionError(Exception):
    status = 500
    user_message = "AI service is unavailable right now. Please try again."

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.user_message)
        self.detail = detail


class RateLimitedError(CompletionError):
    status = 429
    user_message = "Rate limit exceeded. Please try again later."


class CreditsRequiredError(CompletionError):
    status = 402
    user_message = "Payment required. Please add credits to your workspace."


class CompletionClient:
    """Sends one system instruction plus user content, returns the generated text."""

    def __init__(
        self,
        url: str,
        api_key: str,
        model: str,
        request_timeout: int = 60,
        metrics: MetricsCollector | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url
        self._api_key = api_key
        self._model = model
        self._request_timeout = request_timeout
        self._metrics = metrics
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._request_timeout),
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def complete(self, system: str, user: str) -> str:
        assert self._client
        if self._metrics:
            self._metrics.inc("completion_requests_total")
        body: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            resp = await self._client.post(self._url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            self._count_error()
            log.error("completion.unreachable", error=str(exc))
            raise CompletionError(str(exc)) from exc

        if resp.status_code >= 400:
            self._count_error()
            log.error("completion.gateway_error", status=resp.status_code, body=resp.text[:200])
            if resp.status_code == 429:
                raise RateLimitedError(resp.text)
            if resp.status_code == 402:
                raise CreditsRequiredError(resp.text)
            raise CompletionError(f"gateway returned {resp.status_code}")

        choices = resp.json().get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        if not content:
            self._count_error()
            raise CompletionError("empty completion")
        return content

    def _count_error(self) -> None:
        if self._metrics:
            self._metrics.inc("completion_errors_total")
