"""
SSE change feed for the backend's row-change stream.

Each channel is one streaming request with the table, event kinds and row
filter sent as query parameters, so filtering happens server-side. A channel:
- reports SUBSCRIBED once the stream is accepted
- dispatches `postgres_changes` events as RowChange objects
- reports CHANNEL_ERROR / TIMED_OUT / CLOSED when the stream ends
- never reconnects by itself (owners decide when to reopen)
"""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any

import httpx
import structlog

from .backend import (
    ChangeHandler,
    ChannelSpec,
    ChannelStatus,
    RowChange,
    StatusHandler,
)
from .models import ChangeKind

log = structlog.get_logger()

CHANGE_EVENT = "postgres_changes"

_channel_ids = itertools.count(1)


class SSEChannel:
    """One open change-feed channel; the handle returned by `subscribe`."""

    def __init__(self, name: str, spec: ChannelSpec):
        self.name = name
        self.spec = spec
        self.task: asyncio.Task | None = None

    @property
    def open(self) -> bool:
        return self.task is not None and not self.task.done()


class SSEChangeFeed:
    """Change feed streamed over server-sent events with httpx."""

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: str | None = None,
        heartbeat_timeout: float = 90.0,
        verify_tls: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._access_token = access_token
        self._heartbeat_timeout = heartbeat_timeout
        self._verify_tls = verify_tls
        self._transport = transport
        self._channels: dict[str, SSEChannel] = {}

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def subscribe(
        self,
        spec: ChannelSpec,
        on_change: ChangeHandler,
        on_status: StatusHandler,
    ) -> SSEChannel:
        channel = SSEChannel(f"{spec.table}-changes-{next(_channel_ids)}", spec)
        channel.task = asyncio.get_running_loop().create_task(
            self._run(channel, on_change, on_status)
        )
        self._channels[channel.name] = channel
        log.debug("feed.channel_created", channel=channel.name, filter=spec.filter)
        return channel

    def remove_channel(self, handle: SSEChannel) -> None:
        self._channels.pop(handle.name, None)
        if handle.task and not handle.task.done():
            handle.task.cancel()
        log.debug("feed.channel_removed", channel=handle.name)

    async def aclose(self) -> None:
        """Cancel every channel and wait for the streams to finish."""
        channels = list(self._channels.values())
        for channel in channels:
            self.remove_channel(channel)
        tasks = [c.task for c in channels if c.task]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(
        self,
        channel: SSEChannel,
        on_change: ChangeHandler,
        on_status: StatusHandler,
    ) -> None:
        try:
            await self._stream(channel, on_change, on_status)
        except asyncio.CancelledError:
            raise
        except httpx.TimeoutException as exc:
            log.warning("feed.timed_out", channel=channel.name, error=str(exc))
            self._finish(channel, on_status, ChannelStatus.TIMED_OUT)
        except Exception as exc:
            log.warning("feed.channel_error", channel=channel.name, error=str(exc))
            self._finish(channel, on_status, ChannelStatus.CHANNEL_ERROR)
        else:
            log.info("feed.stream_ended", channel=channel.name)
            self._finish(channel, on_status, ChannelStatus.CLOSED)

    def _finish(self, channel: SSEChannel, on_status: StatusHandler, status: ChannelStatus) -> None:
        self._channels.pop(channel.name, None)
        on_status(status)

    def _params(self, spec: ChannelSpec) -> dict[str, str]:
        params = {
            "table": spec.table,
            "events": ",".join(sorted(k.value for k in spec.events)),
        }
        if spec.filter:
            params["filter"] = spec.filter
        return params

    async def _stream(
        self,
        channel: SSEChannel,
        on_change: ChangeHandler,
        on_status: StatusHandler,
    ) -> None:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token or self._api_key}",
            "Accept": "text/event-stream",
        }
        url = f"{self._url}/realtime/v1/changes"

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(None, read=self._heartbeat_timeout),
            verify=self._verify_tls,
            transport=self._transport,
        ) as client:
            async with client.stream(
                "GET", url, headers=headers, params=self._params(channel.spec)
            ) as response:
                response.raise_for_status()
                log.info("feed.subscribed", channel=channel.name, table=channel.spec.table)
                on_status(ChannelStatus.SUBSCRIBED)

                event_type: str | None = None
                data_lines: list[str] = []

                async for line in response.aiter_lines():
                    line = line.rstrip("\n")
                    if line.startswith("event:"):
                        event_type = line[6:].strip()
                    elif line.startswith("data:"):
                        data_lines.append(line[5:].strip())
                    elif line.startswith(":"):
                        # Keepalive
                        pass
                    elif line == "":
                        if data_lines:
                            self._dispatch(channel, event_type, data_lines, on_change)
                        event_type = None
                        data_lines = []

    def _dispatch(
        self,
        channel: SSEChannel,
        event_type: str | None,
        data_lines: list[str],
        on_change: ChangeHandler,
    ) -> None:
        data_str = "\n".join(data_lines)
        try:
            data: dict[str, Any] = json.loads(data_str)
        except json.JSONDecodeError:
            log.warning("feed.parse_error", channel=channel.name, data=data_str[:200])
            return

        if (event_type or data.get("type", CHANGE_EVENT)) != CHANGE_EVENT:
            return

        try:
            kind = ChangeKind(data.get("eventType", ""))
        except ValueError:
            log.warning("feed.unknown_event", channel=channel.name, event=data.get("eventType"))
            return
        if kind not in channel.spec.events:
            return

        change = RowChange(
            table=data.get("table", channel.spec.table),
            kind=kind,
            new=data.get("new") or {},
            old=data.get("old") or {},
            commit_timestamp=data.get("commit_timestamp"),
        )
        try:
            on_change(change)
        except Exception:
            log.exception(
                "feed.handler_error",
                channel=channel.name,
                event_type=kind.value,
            )
