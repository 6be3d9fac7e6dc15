"""
Insight refresh orchestration.

Aggregates an owner's recent rows per dashboard section, asks the Completion
Service for short tips, and persists them. Completion calls are the expensive
part, so refreshes are bounded two ways:
- a stored insight younger than the minimum refresh interval is returned as is
- concurrent refreshes for the same owner and section share one request
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog

from .aggregates import LOW_STOCK_THRESHOLD, generate_business_insights, period_start
from .completion import CompletionClient
from .metrics import MetricsCollector
from .models import FINANCE, INVENTORY, SALES, FinanceRow, InventoryRow, SaleRow, parse_rows
from .rest import RestClient
from .state import InsightRecord, InsightState

log = structlog.get_logger()

SECTIONS = ("sales", "inventory", "finance", "dashboard")
PERIODS = ("week", "month", "quarter", "year")
MAX_TIPS = 5
INVENTORY_SAMPLE = 50

_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


@dataclass
class InsightResult:
    section: str
    insights: list[str]
    refreshed: bool
    generated_at: datetime
    cards: list[dict[str, Any]] = field(default_factory=list)
    message: str | None = None


def parse_tips(text: str, limit: int = MAX_TIPS) -> list[str]:
    """Split a completion into one tip per non-empty line, bullets removed."""
    tips = []
    for line in text.splitlines():
        tip = _BULLET.sub("", line).strip()
        if tip:
            tips.append(tip)
    return tips[:limit]


def _system_prompt(section: str, business_type: str) -> str:
    focus = "the whole business" if section == "dashboard" else f"the {section} section"
    return (
        "You are VyapaarSaathiAI, a business advisor for a small "
        f"{business_type} shop in India.\n"
        f"Give {MAX_TIPS - 2} to {MAX_TIPS} short, actionable tips about {focus}, "
        "based only on the metrics provided.\n"
        "One tip per line, no numbering, no headings. "
        "Format money in Indian style (e.g. ₹1,00,000)."
    )


class InsightRefreshOrchestrator:
    def __init__(
        self,
        rest: RestClient,
        completion: CompletionClient,
        state: InsightState,
        min_refresh_interval: timedelta = timedelta(hours=6),
        low_stock_threshold: int = LOW_STOCK_THRESHOLD,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._rest = rest
        self._completion = completion
        self._state = state
        self._min_interval = min_refresh_interval
        self._low_stock_threshold = low_stock_threshold
        self._metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._inflight: dict[tuple[str, str], asyncio.Task] = {}

    def is_stale(self, record: InsightRecord) -> bool:
        return record.age_seconds(self._clock()) >= self._min_interval.total_seconds()

    async def latest(self, owner_id: str, section: str) -> tuple[InsightRecord, bool] | None:
        """Newest stored insight for a section and whether a refresh is allowed yet."""
        record = await self._state.latest(owner_id, section)
        if record is None:
            return None
        return record, self.is_stale(record)

    async def refresh(
        self,
        owner_id: str,
        section: str,
        business_type: str = "general",
        period: str = "month",
        force: bool = False,
        token: str | None = None,
    ) -> InsightResult:
        if section not in SECTIONS:
            raise ValueError(f"unknown section: {section}")
        if period not in PERIODS:
            raise ValueError(f"unknown period: {period}")

        if not force:
            record = await self._state.latest(owner_id, section)
            if record and not self.is_stale(record):
                if self._metrics:
                    self._metrics.inc("insights_cache_hits_total")
                log.debug("insights.cache_hit", owner=owner_id, section=section)
                return InsightResult(
                    section=section,
                    insights=record.insights,
                    refreshed=False,
                    generated_at=record.created_at,
                    message="Insights are up to date; next refresh is rate limited to save credits.",
                )

        key = (owner_id, section)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._generate(owner_id, section, business_type, period, token)
            )
            self._inflight[key] = task
            task.add_done_callback(lambda _t: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _generate(
        self,
        owner_id: str,
        section: str,
        business_type: str,
        period: str,
        token: str | None,
    ) -> InsightResult:
        now = self._clock()
        start = period_start(period, now.date())

        sales_rows, inventory_rows, finance_rows = await asyncio.gather(
            self._rest.select(SALES, owner_id, filters={"Date": f"gte.{start.isoformat()}"}, token=token),
            self._rest.select(
                INVENTORY, owner_id, order='"Stock quantity".asc', limit=INVENTORY_SAMPLE, token=token
            ),
            self._rest.select(FINANCE, owner_id, token=token),
        )
        sales: list[SaleRow] = parse_rows(SaleRow, sales_rows)
        inventory: list[InventoryRow] = parse_rows(InventoryRow, inventory_rows)
        finance: list[FinanceRow] = parse_rows(FinanceRow, finance_rows)

        cards = generate_business_insights(
            sales, inventory, finance, period, self._low_stock_threshold
        )
        user = json.dumps(
            {"section": section, "period": period, "metrics": cards},
            ensure_ascii=False,
            default=str,
        )
        text = await self._completion.complete(_system_prompt(section, business_type), user)
        tips = parse_tips(text)

        record = await self._state.save(owner_id, section, tips, created_at=now)
        await self._state.prune(owner_id, section)
        log.info(
            "insights.refreshed",
            owner=owner_id,
            section=section,
            period=period,
            sales=len(sales),
            tips=len(tips),
        )
        return InsightResult(
            section=section,
            insights=tips,
            refreshed=True,
            generated_at=record.created_at,
            cards=cards,
        )
