"""
Backend Service boundary: change-feed channel types and errors.

The managed backend is opaque; this module fixes the shape of what the sync
layer consumes from it. Concrete transports live in `feed` (change feed) and
`rest` (row CRUD and auth).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from .models import ChangeKind


class ChannelStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class ChannelSpec:
    """What a channel listens to: one table, some change kinds, a row filter."""
    table: str
    events: frozenset[ChangeKind]
    filter: str | None = None


@dataclass
class RowChange:
    """A single row-change event delivered by the change feed."""
    table: str
    kind: ChangeKind
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)
    commit_timestamp: str | None = None


ChangeHandler = Callable[[RowChange], None]
StatusHandler = Callable[[ChannelStatus], None]


class ChannelHandle(Protocol):
    name: str


class ChangeFeed(Protocol):
    def subscribe(
        self,
        spec: ChannelSpec,
        on_change: ChangeHandler,
        on_status: StatusHandler,
    ) -> ChannelHandle: ...

    def remove_channel(self, handle: ChannelHandle) -> None: ...


class BackendError(Exception):
    """A backend request failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def owner_filter(owner_column: str, owner_id: str) -> str:
    """Server-side row filter restricting events to one owner's rows."""
    return f"{owner_column}=eq.{owner_id}"
