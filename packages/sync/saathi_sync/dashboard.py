"""
Dashboard session: the four live panels of one signed-in owner.

Every panel gets its own controller and channel, even when two panels watch
the same table; they only share the host visibility signal.
"""

from __future__ import annotations

from datetime import date
from typing import Callable

import structlog

from .backend import ChangeFeed
from .config import SaathiConfig
from .insights import InsightRefreshOrchestrator
from .metrics import MetricsCollector
from .panels import FinancePanel, InsightsPanel, InventoryPanel, Panel, SalesPanel
from .rest import RestClient
from .timers import Scheduler
from .visibility import VisibilitySource

log = structlog.get_logger()


class DashboardSession:
    def __init__(
        self,
        owner_id: str | None,
        config: SaathiConfig,
        rest: RestClient,
        feed: ChangeFeed,
        visibility: VisibilitySource,
        insights: InsightRefreshOrchestrator | None = None,
        business_type: str = "general",
        scheduler: Scheduler | None = None,
        metrics: MetricsCollector | None = None,
        today: Callable[[], date] = date.today,
        initially_hidden: bool = False,
    ):
        self.owner_id = owner_id
        common = dict(
            realtime=config.realtime,
            insights=insights,
            business_type=business_type,
            scheduler=scheduler,
            metrics=metrics,
            today=today,
            initially_hidden=initially_hidden,
        )
        self.sales = SalesPanel(owner_id, rest, feed, visibility, **common)
        self.inventory = InventoryPanel(
            owner_id, rest, feed, visibility,
            low_stock_threshold=config.insights.low_stock_threshold,
            **common,
        )
        self.finance = FinancePanel(owner_id, rest, feed, visibility, **common)
        self.insights = InsightsPanel(owner_id, rest, feed, visibility, **common)
        self._mounted = False

    @property
    def panels(self) -> list[Panel]:
        return [self.sales, self.inventory, self.finance, self.insights]

    @property
    def live(self) -> bool:
        """The "Live" badge: every panel currently holds a subscribed channel."""
        return self._mounted and all(p.live for p in self.panels)

    async def start(self) -> None:
        if self._mounted or not self.owner_id:
            return
        self._mounted = True
        for panel in self.panels:
            await panel.mount()
        log.info("dashboard.started", owner=self.owner_id, panels=len(self.panels))

    def stop(self) -> None:
        if not self._mounted:
            return
        self._mounted = False
        for panel in self.panels:
            panel.unmount()
        log.info("dashboard.stopped", owner=self.owner_id)
