"""
Dashboard panel data fetchers.

Each panel owns a local cache of one table's rows for one owner. Its
subscription controller signals row changes; a refresh refetches the full row
set, recomputes the panel's aggregates and then asks the insight orchestrator
for tips (which is rate limited on its side). Refreshes of one panel never
overlap: a change seen mid-refresh queues exactly one more.
"""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Any, Callable

import structlog

from .aggregates import (
    LOW_STOCK_THRESHOLD,
    summarize_finance,
    summarize_inventory,
    summarize_sales,
)
from .backend import BackendError, ChangeFeed
from .completion import CompletionError
from .config import RealtimeConfig
from .controller import SubscriptionController, SubscriptionDescriptor
from .insights import InsightRefreshOrchestrator
from .metrics import MetricsCollector
from .models import FINANCE, INVENTORY, SALES, FinanceRow, InventoryRow, SaleRow, TableSpec, parse_rows
from .rest import RestClient
from .timers import Scheduler
from .visibility import VisibilitySource

log = structlog.get_logger()

RefreshListener = Callable[["Panel"], None]


class Panel:
    """Base panel: row cache, aggregates, live status, user-facing notice."""

    section = ""
    insight_section: str | None = None
    table: TableSpec = SALES
    row_model: Any = None

    def __init__(
        self,
        owner_id: str | None,
        rest: RestClient,
        feed: ChangeFeed,
        visibility: VisibilitySource | None,
        realtime: RealtimeConfig | None = None,
        insights: InsightRefreshOrchestrator | None = None,
        business_type: str = "general",
        scheduler: Scheduler | None = None,
        metrics: MetricsCollector | None = None,
        today: Callable[[], date] = date.today,
        initially_hidden: bool = False,
    ):
        self.owner_id = owner_id
        self._rest = rest
        self._insights = insights
        self._business_type = business_type
        self._today = today
        self._listeners: list[RefreshListener] = []

        realtime = realtime or RealtimeConfig()
        self.controller = SubscriptionController(
            SubscriptionDescriptor.for_table(
                self.table,
                owner_id,
                self._data_changed,
                throttle_seconds=realtime.throttle_for(self.section),
                idle_detection=realtime.idle_detection,
                idle_timeout_seconds=realtime.idle_timeout_seconds,
                initially_hidden=initially_hidden,
            ),
            feed,
            visibility=visibility if realtime.idle_detection else None,
            scheduler=scheduler,
            metrics=metrics,
        )

        self.rows: list[Any] = []
        self.summary: Any = None
        self.tips: list[str] = []
        self.notice: str | None = None
        self.refresh_count = 0
        self._refresh_task: asyncio.Task | None = None
        self._rerun = False

    @property
    def live(self) -> bool:
        return self.controller.subscribed.value

    def on_refresh(self, listener: RefreshListener) -> None:
        self._listeners.append(listener)

    async def mount(self) -> bool:
        """Open the live subscription and load the first snapshot."""
        if not self.owner_id:
            return False
        self.controller.open()
        await self.refresh()
        return self.live

    def unmount(self) -> None:
        self.controller.close()
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None
        self._rerun = False

    async def refresh(self) -> None:
        """Refetch now, or once more after the refresh already in flight."""
        if not self.owner_id:
            return
        await asyncio.shield(self._start_refresh())

    def _data_changed(self) -> None:
        self._start_refresh()

    def _start_refresh(self) -> asyncio.Task:
        # One load at a time per panel, so an older snapshot never lands last
        task = self._refresh_task
        if task is not None and not task.done():
            self._rerun = True
            return task
        self._refresh_task = asyncio.ensure_future(self._refresh_until_current())
        return self._refresh_task

    async def _refresh_until_current(self) -> None:
        while True:
            self._rerun = False
            await self._refresh_once()
            if not self._rerun:
                return

    async def _refresh_once(self) -> None:
        try:
            await self.load()
        except BackendError as exc:
            self.notice = f"Could not load {self.section} data. Showing last saved figures."
            log.warning("panel.load_failed", section=self.section, error=str(exc), status=exc.status)
            return
        await self._request_insights()
        self.refresh_count += 1
        for listener in list(self._listeners):
            listener(self)

    async def load(self) -> None:
        assert self.owner_id
        raw = await self._rest.select(self.table, self.owner_id)
        self.rows = parse_rows(self.row_model, raw)
        self.summary = self.summarize(self.rows)
        self.notice = None
        log.debug("panel.loaded", section=self.section, rows=len(self.rows))

    def summarize(self, rows: list[Any]) -> Any:
        raise NotImplementedError

    async def _request_insights(self) -> None:
        if self._insights is None:
            return
        assert self.owner_id
        try:
            result = await self._insights.refresh(
                self.owner_id,
                self.insight_section or self.section,
                business_type=self._business_type,
            )
        except CompletionError as exc:
            self.notice = exc.user_message
            log.warning("panel.insights_failed", section=self.section, status=exc.status)
            return
        except BackendError as exc:
            log.warning("panel.insights_failed", section=self.section, error=str(exc))
            return
        self.tips = result.insights


class SalesPanel(Panel):
    section = "sales"
    table = SALES
    row_model = SaleRow

    def summarize(self, rows: list[SaleRow]) -> Any:
        return summarize_sales(rows, self._today())


class InventoryPanel(Panel):
    section = "inventory"
    table = INVENTORY
    row_model = InventoryRow

    def __init__(self, *args: Any, low_stock_threshold: int = LOW_STOCK_THRESHOLD, **kwargs: Any):
        self._low_stock_threshold = low_stock_threshold
        super().__init__(*args, **kwargs)

    def summarize(self, rows: list[InventoryRow]) -> Any:
        return summarize_inventory(rows, self._low_stock_threshold)


class FinancePanel(Panel):
    section = "finance"
    table = FINANCE
    row_model = FinanceRow

    def summarize(self, rows: list[FinanceRow]) -> Any:
        return summarize_finance(rows)


class InsightsPanel(Panel):
    """Dashboard-wide tips; any sales change may make them worth regenerating."""

    section = "insights"
    insight_section = "dashboard"
    table = SALES

    async def load(self) -> None:
        self.notice = None
