"""Tests for the insight refresh orchestrator."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from saathi_sync.completion import CompletionClient, RateLimitedError
from saathi_sync.insights import InsightRefreshOrchestrator, parse_tips
from saathi_sync.metrics import MetricsCollector
from saathi_sync.rest import RestClient

START = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock(START)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
async def orchestrator(backend, gateway, state, clock, metrics):
    rest = RestClient("http://backend.test", "anon-key", transport=backend.transport())
    completion = CompletionClient("http://gateway.test", "gw-key", "m", transport=gateway.transport())
    await rest.open()
    await completion.open()
    yield InsightRefreshOrchestrator(rest, completion, state, metrics=metrics, clock=clock)
    await completion.close()
    await rest.close()


def test_parse_tips_strips_bullets_and_blank_lines():
    text = "1. Restock atta\n\n- Push combos\n* Track udhar\n2) Close early on Sunday\n• Reorder soap\nSixth tip"
    assert parse_tips(text) == [
        "Restock atta",
        "Push combos",
        "Track udhar",
        "Close early on Sunday",
        "Reorder soap",
    ]


async def test_first_refresh_generates_and_persists(orchestrator, backend, gateway, state):
    result = await orchestrator.refresh("owner-1", "sales", business_type="grocery")

    assert result.refreshed is True
    assert result.insights == ["Restock atta", "Push festive combos", "Cut delivery costs"]
    assert result.generated_at == START
    assert {c["type"] for c in result.cards} >= {"revenue", "trend", "finance"}

    (call,) = gateway.calls
    system, user = call["messages"]
    assert "grocery" in system["content"]
    payload = json.loads(user["content"])
    assert payload["section"] == "sales"
    assert payload["period"] == "month"

    (sales_request,) = backend.table_requests("Sales")
    assert sales_request.url.params["Date"] == "gte.2026-09-19"
    (inventory_request,) = backend.table_requests("Inventory")
    assert inventory_request.url.params["limit"] == "50"

    stored = await state.latest("owner-1", "sales")
    assert stored.insights == result.insights


async def test_recent_insights_are_served_from_store(orchestrator, gateway, clock, metrics):
    await orchestrator.refresh("owner-1", "dashboard")
    clock.now = START + timedelta(hours=5, minutes=59)

    result = await orchestrator.refresh("owner-1", "dashboard")
    assert result.refreshed is False
    assert result.generated_at == START
    assert result.message
    assert len(gateway.calls) == 1
    assert metrics.get("insights_cache_hits_total") == 1


async def test_latest_reports_staleness(orchestrator, clock):
    assert await orchestrator.latest("owner-1", "sales") is None

    await orchestrator.refresh("owner-1", "sales")
    record, stale = await orchestrator.latest("owner-1", "sales")
    assert record.created_at == START
    assert stale is False

    clock.now = START + timedelta(hours=6)
    _, stale = await orchestrator.latest("owner-1", "sales")
    assert stale is True


async def test_stale_insights_are_regenerated(orchestrator, gateway, clock):
    await orchestrator.refresh("owner-1", "finance")
    clock.now = START + timedelta(hours=6)
    gateway.reply = "Collect pending udhar"

    result = await orchestrator.refresh("owner-1", "finance")
    assert result.refreshed is True
    assert result.insights == ["Collect pending udhar"]
    assert len(gateway.calls) == 2


async def test_force_bypasses_interval(orchestrator, gateway):
    await orchestrator.refresh("owner-1", "inventory")
    result = await orchestrator.refresh("owner-1", "inventory", force=True)
    assert result.refreshed is True
    assert len(gateway.calls) == 2


async def test_sections_are_cached_independently(orchestrator, gateway):
    await orchestrator.refresh("owner-1", "sales")
    await orchestrator.refresh("owner-1", "inventory")
    assert len(gateway.calls) == 2


async def test_concurrent_refreshes_share_one_request(orchestrator, gateway):
    first, second = await asyncio.gather(
        orchestrator.refresh("owner-1", "dashboard"),
        orchestrator.refresh("owner-1", "dashboard"),
    )
    assert first.insights == second.insights
    assert len(gateway.calls) == 1


async def test_completion_errors_propagate_and_store_nothing(orchestrator, gateway, state):
    gateway.status = 429
    with pytest.raises(RateLimitedError):
        await orchestrator.refresh("owner-1", "sales")
    assert await state.latest("owner-1", "sales") is None

    gateway.status = 200
    result = await orchestrator.refresh("owner-1", "sales")
    assert result.refreshed is True


async def test_unknown_section_or_period(orchestrator):
    with pytest.raises(ValueError):
        await orchestrator.refresh("owner-1", "marketing")
    with pytest.raises(ValueError):
        await orchestrator.refresh("owner-1", "sales", period="decade")
