"""Tests for the dashboard panel data fetchers."""

import asyncio
from datetime import date, datetime, timezone

import pytest

from saathi_sync.completion import CreditsRequiredError
from saathi_sync.insights import InsightResult
from saathi_sync.panels import FinancePanel, InsightsPanel, InventoryPanel, SalesPanel
from saathi_sync.rest import RestClient

TODAY = date(2026, 10, 19)


class StubInsights:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def refresh(self, owner_id, section, business_type="general", **kwargs):
        self.calls.append((owner_id, section, business_type))
        if self.error:
            raise self.error
        return InsightResult(section, [f"{section} tip"], True, datetime(2026, 10, 19, tzinfo=timezone.utc))


@pytest.fixture
async def rest(backend):
    c = RestClient("http://backend.test", "anon-key", transport=backend.transport())
    await c.open()
    yield c
    await c.close()


@pytest.fixture
def make_panel(rest, feed, visibility, scheduler):
    def make(cls, owner_id="owner-1", **kwargs):
        return cls(owner_id, rest, feed, visibility, scheduler=scheduler, today=lambda: TODAY, **kwargs)

    return make


async def wait_for_refresh(panel, count):
    for _ in range(100):
        if panel.refresh_count >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"panel refreshed {panel.refresh_count} times, expected {count}")


async def test_sales_panel_mount_loads_and_subscribes(make_panel, feed):
    panel = make_panel(SalesPanel)
    assert await panel.mount() is True

    assert panel.live
    assert [r.id for r in panel.rows] == [1, 2]
    assert panel.summary.count == 2
    assert panel.summary.total == 340
    assert panel.summary.today_total == 250
    assert panel.refresh_count == 1

    (channel,) = feed.channels
    assert channel.spec.table == "Sales"
    assert channel.spec.filter == "User_id=eq.owner-1"


async def test_row_change_triggers_refetch(make_panel, feed, backend):
    panel = make_panel(SalesPanel)
    await panel.mount()

    backend.tables["Sales"].append(
        {"id": 4, "Product": "Sugar", "Amount": 45, "Quantity": 1, "Date": "2026-10-19", "User_id": "owner-1"}
    )
    feed.emit(new={"id": 4})
    await wait_for_refresh(panel, 2)

    assert panel.summary.count == 3
    assert panel.summary.today_total == 295


async def test_burst_refetches_once_per_window(make_panel, feed, scheduler, backend):
    panel = make_panel(SalesPanel)
    await panel.mount()
    for _ in range(5):
        feed.emit()
    await wait_for_refresh(panel, 2)
    await asyncio.sleep(0.05)
    assert panel.refresh_count == 2

    scheduler.advance(1.0)
    await wait_for_refresh(panel, 3)
    assert len(backend.table_requests("Sales")) == 3


async def test_load_failure_keeps_last_rows(make_panel, backend):
    panel = make_panel(FinancePanel)
    await panel.mount()
    assert panel.summary.income == 1000

    backend.fail_tables["finance"] = 400
    await panel.refresh()
    assert panel.notice == "Could not load finance data. Showing last saved figures."
    assert panel.summary.income == 1000
    assert panel.refresh_count == 1


async def test_inventory_panel_low_stock_threshold(make_panel):
    panel = make_panel(InventoryPanel, low_stock_threshold=50)
    await panel.mount()
    assert [i.item_name for i in panel.summary.low_stock] == ["Atta 5kg", "Soap"]
    assert panel.summary.total_value == 2200


async def test_insight_tips_and_business_type(make_panel):
    insights = StubInsights()
    panel = make_panel(FinancePanel, insights=insights, business_type="grocery")
    await panel.mount()
    assert panel.tips == ["finance tip"]
    assert insights.calls == [("owner-1", "finance", "grocery")]


async def test_completion_error_becomes_notice(make_panel):
    panel = make_panel(SalesPanel, insights=StubInsights(CreditsRequiredError()))
    await panel.mount()
    assert panel.notice == "Payment required. Please add credits to your workspace."
    assert panel.summary.count == 2


async def test_insights_panel_uses_dashboard_section(make_panel, feed, backend):
    insights = StubInsights()
    panel = make_panel(InsightsPanel, insights=insights)
    await panel.mount()
    assert panel.tips == ["dashboard tip"]
    assert insights.calls[0][1] == "dashboard"
    assert feed.channels[0].spec.table == "Sales"
    assert panel.controller.descriptor.throttle_seconds == 2.0
    assert backend.table_requests("Sales") == []


async def test_unmount_releases_channel(make_panel, feed):
    panel = make_panel(SalesPanel)
    await panel.mount()
    panel.unmount()
    assert feed.open_channels == []
    assert not panel.live


async def test_missing_owner_does_nothing(make_panel, feed, backend):
    panel = make_panel(SalesPanel, owner_id=None)
    assert await panel.mount() is False
    assert feed.channels == []
    assert backend.requests == []


async def test_refresh_listeners(make_panel):
    seen = []
    panel = make_panel(SalesPanel)
    panel.on_refresh(lambda p: seen.append(p.section))
    await panel.mount()
    assert seen == ["sales"]


class SlowRest:
    """One mutable Sales row; the chosen select call holds its snapshot a while."""

    def __init__(self, slow_call, delay=0.3):
        self.row = {"id": 1, "Product": "Old", "Amount": 10, "Quantity": 1, "Date": "2026-10-19", "User_id": "owner-1"}
        self.slow_call = slow_call
        self.delay = delay
        self.calls = 0

    async def select(self, table, owner_id, **kwargs):
        self.calls += 1
        snapshot = [dict(self.row)]
        if self.calls == self.slow_call:
            await asyncio.sleep(self.delay)
        return snapshot


async def test_slow_fetch_never_overwrites_newer_rows(feed, visibility, scheduler):
    rest = SlowRest(slow_call=2)
    panel = SalesPanel("owner-1", rest, feed, visibility, scheduler=scheduler, today=lambda: TODAY)
    await panel.mount()

    feed.emit()
    await asyncio.sleep(0.01)
    rest.row["Product"] = "New"
    feed.emit()
    # Trailing refresh fires while the leading fetch is still out
    scheduler.advance(1.0)

    await wait_for_refresh(panel, 3)
    await asyncio.sleep(0.05)
    assert rest.calls == 3
    assert [r.product for r in panel.rows] == ["New"]
    assert panel.refresh_count == 3


async def test_unmount_cancels_refresh_in_flight(feed, visibility, scheduler):
    rest = SlowRest(slow_call=2)
    panel = SalesPanel("owner-1", rest, feed, visibility, scheduler=scheduler, today=lambda: TODAY)
    await panel.mount()

    feed.emit()
    await asyncio.sleep(0.01)
    rest.row["Product"] = "New"
    panel.unmount()

    await asyncio.sleep(0.4)
    assert panel.refresh_count == 1
    assert [r.product for r in panel.rows] == ["Old"]
