"""
Throttled subscription controller.

Wraps one logical change-feed subscription (table + owner + event kinds) and
turns row events into at most one leading and one trailing "data changed"
notification per throttle window. While the host is hidden for longer than the
idle threshold the channel is torn down to save backend credits; it is reopened
with a forced refresh when the host becomes visible again.

Lifecycle states:

    Active    --hidden-->        Inactive (idle timer running)
    Inactive  --visible-->       Active   (timer cancelled, channel untouched)
    Inactive  --idle timeout-->  Unsubscribed
    Unsubscribed --visible-->    Active   (channel reopened, forced refresh)
    Closed    --open(), hidden-->  Unsubscribed (no channel until visible)
    any       --close()-->       Closed
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from .backend import (
    BackendError,
    ChangeFeed,
    ChannelHandle,
    ChannelSpec,
    ChannelStatus,
    RowChange,
    owner_filter,
)
from .metrics import MetricsCollector
from .models import ALL_CHANGES, ChangeKind, TableSpec
from .throttle import Throttle
from .timers import LoopScheduler, Scheduler, Timer
from .visibility import VisibilitySource

log = structlog.get_logger()

DEFAULT_THROTTLE_SECONDS = 1.0
DEFAULT_IDLE_TIMEOUT_SECONDS = 5 * 60.0

NotifyCallback = Callable[[], Any]


@dataclass(frozen=True)
class SubscriptionDescriptor:
    table: str
    owner_id: str | None
    callback: NotifyCallback
    events: frozenset[ChangeKind] = ALL_CHANGES
    owner_column: str = "user_id"
    throttle_seconds: float = DEFAULT_THROTTLE_SECONDS
    idle_detection: bool = True
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS
    initially_hidden: bool = False

    @classmethod
    def for_table(
        cls,
        table: TableSpec,
        owner_id: str | None,
        callback: NotifyCallback,
        **options: Any,
    ) -> SubscriptionDescriptor:
        return cls(
            table=table.name,
            owner_id=owner_id,
            callback=callback,
            owner_column=table.owner_column,
            **options,
        )

    def channel_spec(self) -> ChannelSpec:
        assert self.owner_id
        return ChannelSpec(
            table=self.table,
            events=frozenset(self.events),
            filter=owner_filter(self.owner_column, self.owner_id),
        )


# --- Lifecycle states ---

@dataclass
class Active:
    handle: ChannelHandle


@dataclass
class Inactive:
    handle: ChannelHandle
    idle_timer: Timer


@dataclass
class Unsubscribed:
    pass


@dataclass
class Closed:
    pass


State = Active | Inactive | Unsubscribed | Closed


class Observable:
    """A value whose watchers are called whenever it changes."""

    def __init__(self, value: Any):
        self._value = value
        self._watchers: list[Callable[[Any], None]] = []

    @property
    def value(self) -> Any:
        return self._value

    def set(self, value: Any) -> None:
        if value == self._value:
            return
        self._value = value
        for watcher in list(self._watchers):
            watcher(value)

    def watch(self, watcher: Callable[[Any], None]) -> Callable[[], None]:
        self._watchers.append(watcher)

        def unwatch() -> None:
            if watcher in self._watchers:
                self._watchers.remove(watcher)

        return unwatch


class SubscriptionController:
    """One throttled, idle-aware change-feed subscription owned by one panel."""

    def __init__(
        self,
        descriptor: SubscriptionDescriptor,
        feed: ChangeFeed,
        visibility: VisibilitySource | None = None,
        scheduler: Scheduler | None = None,
        metrics: MetricsCollector | None = None,
    ):
        if descriptor.idle_detection and visibility is None:
            raise ValueError("idle detection requires a visibility source")
        self._descriptor = descriptor
        self._feed = feed
        self._visibility = visibility
        self._scheduler = scheduler or LoopScheduler()
        self._metrics = metrics
        self._throttle = Throttle(descriptor.throttle_seconds, self._scheduler, self._deliver)
        self._state: State = Closed()
        self._generation = 0
        self._unwatch_visibility: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task] = set()
        self.subscribed = Observable(False)

    @property
    def descriptor(self) -> SubscriptionDescriptor:
        return self._descriptor

    @property
    def state(self) -> State:
        return self._state

    @property
    def pending(self) -> bool:
        return self._throttle.pending

    # --- Public contract ---

    def open(self) -> bool:
        """Open the channel. Returns the current subscribed status."""
        if not isinstance(self._state, Closed):
            return self.subscribed.value
        if not self._descriptor.owner_id:
            log.debug("controller.no_owner", table=self._descriptor.table)
            return False

        if self._descriptor.idle_detection:
            assert self._visibility is not None
            self._unwatch_visibility = self._visibility.subscribe(self._on_visibility)
        self._state = Unsubscribed()
        if self._descriptor.idle_detection and self._descriptor.initially_hidden:
            # Nobody is looking; the first visible transition opens the channel
            log.debug("controller.deferred_while_hidden", table=self._descriptor.table)
            return False
        self._connect()
        return self.subscribed.value

    def close(self) -> None:
        """Tear down the channel and cancel every timer. Idempotent."""
        if isinstance(self._state, Closed):
            return
        self._teardown()
        for task in list(self._tasks):
            task.cancel()
        if self._unwatch_visibility is not None:
            self._unwatch_visibility()
            self._unwatch_visibility = None
        self._state = Closed()
        log.info("controller.closed", table=self._descriptor.table)

    def notify(self, change: RowChange | None = None) -> None:
        """Handle one matching row event from the change feed."""
        if self._metrics:
            self._metrics.inc("events_received_total")
        if not self._throttle.trigger() and self._metrics:
            self._metrics.inc("events_coalesced_total")

    def resume(self) -> None:
        """Manual refresh: reopen after teardown or failure and force a refresh."""
        if isinstance(self._state, Unsubscribed):
            self._reactivate()

    # --- Transitions ---

    def _on_visibility(self, hidden: bool) -> None:
        state = self._state
        if hidden:
            if isinstance(state, Active):
                timer = self._scheduler.call_later(
                    self._descriptor.idle_timeout_seconds, self._on_idle_timeout
                )
                self._state = Inactive(state.handle, timer)
                log.debug("controller.inactive", table=self._descriptor.table)
        elif isinstance(state, Inactive):
            state.idle_timer.cancel()
            self._state = Active(state.handle)
            log.debug("controller.active", table=self._descriptor.table)
        elif isinstance(state, Unsubscribed):
            self._reactivate()

    def _on_idle_timeout(self) -> None:
        if not isinstance(self._state, Inactive):
            return
        self._teardown()
        self._state = Unsubscribed()
        if self._metrics:
            self._metrics.inc("idle_teardowns_total")
        log.info(
            "controller.idle_unsubscribed",
            table=self._descriptor.table,
            idle_seconds=self._descriptor.idle_timeout_seconds,
        )

    def _reactivate(self) -> None:
        self._connect()
        # The local cache may be stale after a teardown
        self._throttle.force()

    def _connect(self) -> None:
        self._generation += 1
        generation = self._generation
        spec = self._descriptor.channel_spec()
        try:
            handle = self._feed.subscribe(
                spec,
                lambda change: self._on_change(generation, change),
                lambda status: self._on_status(generation, status),
            )
        except BackendError as exc:
            self._record_failure(str(exc))
            return

        if generation != self._generation:
            # Failed before subscribe() even returned
            self._feed.remove_channel(handle)
            return

        self._state = Active(handle)
        if self._metrics:
            self._metrics.inc("subscriptions_opened_total")
            self._metrics.add_gauge("subscriptions_active", 1)
        log.debug("controller.channel_opened", table=spec.table, channel=handle.name)

    def _teardown(self) -> None:
        """Release the handle and drop all timers; leaves state to the caller."""
        self._generation += 1
        self._throttle.cancel()
        state = self._state
        if isinstance(state, Inactive):
            state.idle_timer.cancel()
        if isinstance(state, (Active, Inactive)):
            self._feed.remove_channel(state.handle)
            if self._metrics:
                self._metrics.add_gauge("subscriptions_active", -1)
            log.info("controller.unsubscribed", table=self._descriptor.table)
        self.subscribed.set(False)

    # --- Feed callbacks ---

    def _on_change(self, generation: int, change: RowChange) -> None:
        if generation == self._generation:
            self.notify(change)

    def _on_status(self, generation: int, status: ChannelStatus) -> None:
        if generation != self._generation:
            return
        if status == ChannelStatus.SUBSCRIBED:
            self.subscribed.set(True)
            log.info("controller.subscribed", table=self._descriptor.table)
            return

        self._generation += 1
        state = self._state
        if isinstance(state, Inactive):
            state.idle_timer.cancel()
        if isinstance(state, (Active, Inactive)):
            self._feed.remove_channel(state.handle)
            if self._metrics:
                self._metrics.add_gauge("subscriptions_active", -1)
            self._state = Unsubscribed()
        self._record_failure(status.value)

    def _record_failure(self, reason: str) -> None:
        self.subscribed.set(False)
        if self._metrics:
            self._metrics.inc("subscriptions_failed_total")
        log.warning(
            "controller.subscribe_failed",
            table=self._descriptor.table,
            reason=reason,
        )

    # --- Delivery ---

    def _deliver(self) -> None:
        if self._metrics:
            self._metrics.inc("notifications_delivered_total")
        result = self._descriptor.callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
