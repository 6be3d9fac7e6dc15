"""
Row CRUD and auth against the backend's REST surface.

Every read and write is scoped by an owner equality filter. Retries transient
failures (5xx, connection errors, 429 with Retry-After) a few times; 4xx
responses fail immediately.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from .backend import BackendError
from .models import TableSpec

log = structlog.get_logger()

MAX_RETRIES = 3
RETRY_BASE_SECONDS = 0.5


class RestClient:
    """PostgREST-style table access plus token verification."""

    def __init__(
        self,
        url: str,
        api_key: str,
        verify_tls: bool = True,
        request_timeout: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> RestClient:
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # --- Rows ---

    async def select(
        self,
        table: TableSpec,
        owner_id: str,
        *,
        columns: str = "*",
        filters: dict[str, str] | None = None,
        order: str | None = None,
        limit: int | None = None,
        token: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch an owner's rows. `filters` maps column to a PostgREST operator expression."""
        params: dict[str, Any] = {
            "select": columns,
            table.owner_column: f"eq.{owner_id}",
        }
        params.update(filters or {})
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)

        resp = await self._request("GET", f"/rest/v1/{table.name}", params=params, token=token)
        return resp.json()

    async def select_one(
        self,
        table: TableSpec,
        owner_id: str,
        **kwargs: Any,
    ) -> dict[str, Any] | None:
        rows = await self.select(table, owner_id, limit=1, **kwargs)
        return rows[0] if rows else None

    async def insert(
        self,
        table: TableSpec,
        owner_id: str,
        row: dict[str, Any],
        token: str | None = None,
    ) -> dict[str, Any]:
        body = {**row, table.owner_column: owner_id}
        resp = await self._request(
            "POST",
            f"/rest/v1/{table.name}",
            json=body,
            token=token,
            headers={"Prefer": "return=representation"},
        )
        created = resp.json()
        return created[0] if isinstance(created, list) and created else body

    async def update(
        self,
        table: TableSpec,
        owner_id: str,
        row_id: Any,
        changes: dict[str, Any],
        token: str | None = None,
    ) -> None:
        params = {"id": f"eq.{row_id}", table.owner_column: f"eq.{owner_id}"}
        await self._request("PATCH", f"/rest/v1/{table.name}", params=params, json=changes, token=token)

    async def delete(
        self,
        table: TableSpec,
        owner_id: str,
        row_id: Any,
        token: str | None = None,
    ) -> None:
        params = {"id": f"eq.{row_id}", table.owner_column: f"eq.{owner_id}"}
        await self._request("DELETE", f"/rest/v1/{table.name}", params=params, token=token)

    # --- Auth ---

    async def get_user(self, token: str) -> dict[str, Any] | None:
        """Resolve an access token to its user, or None if it is not valid."""
        try:
            resp = await self._request("GET", "/auth/v1/user", token=token, retry=False)
        except BackendError as exc:
            if exc.status in (401, 403):
                return None
            raise
        user = resp.json()
        return user if user.get("id") else None

    async def check_health(self) -> bool:
        try:
            await self._request("GET", "/rest/v1/", retry=False)
            return True
        except BackendError:
            return False

    # --- Transport ---

    def _headers(self, token: str | None) -> dict[str, str]:
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {token or self._api_key}",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        headers: dict[str, str] | None = None,
        retry: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        assert self._client
        url = f"{self._url}{path}"
        all_headers = {**self._headers(token), **(headers or {})}
        attempts = MAX_RETRIES if retry else 1

        last_exc: Exception | None = None
        for attempt in range(attempts):
            try:
                resp = await self._client.request(method, url, headers=all_headers, **kwargs)

                if resp.status_code == 429 and attempt + 1 < attempts:
                    retry_after = float(resp.headers.get("Retry-After", RETRY_BASE_SECONDS * (attempt + 1)))
                    log.warning("rest.rate_limited", path=path, retry_after=retry_after)
                    await asyncio.sleep(retry_after)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if 400 <= status < 500:
                    log.error("rest.client_error", method=method, path=path, status=status)
                    raise BackendError(f"{method} {path} failed: {exc.response.text[:200]}", status) from exc
                last_exc = exc
            except (httpx.ConnectError, httpx.ReadError, httpx.TimeoutException) as exc:
                last_exc = exc

            if attempt + 1 < attempts:
                backoff = RETRY_BASE_SECONDS * (2 ** attempt)
                log.warning("rest.retry", path=path, attempt=attempt + 1, backoff=backoff, error=str(last_exc))
                await asyncio.sleep(backoff)

        status = last_exc.response.status_code if isinstance(last_exc, httpx.HTTPStatusError) else None
        raise BackendError(f"{method} {path} failed: {last_exc}", status) from last_exc
