"""
Shared fixtures for sync tests.

Timers run on a manual clock and every HTTP service is an httpx.MockTransport,
so nothing here touches the network or waits on wall time.
"""

import json
from typing import Any, Callable

import httpx
import pytest

from saathi_sync.backend import BackendError, ChannelSpec, ChannelStatus, RowChange
from saathi_sync.config import SaathiConfig
from saathi_sync.models import ChangeKind
from saathi_sync.state import InsightState
from saathi_sync.visibility import VisibilitySignal

OWNER = "owner-1"


class ManualTimer:
    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose clock only moves when a test calls advance()."""

    def __init__(self):
        self.now = 0.0
        self._timers: list[ManualTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self.now + delay, callback)
        self._timers.append(timer)
        return timer

    @property
    def active(self) -> list[ManualTimer]:
        return [t for t in self._timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self.active if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            self.now = timer.when
            timer.callback()
        self.now = target


class FakeChannel:
    def __init__(self, name: str, spec: ChannelSpec, on_change, on_status):
        self.name = name
        self.spec = spec
        self.on_change = on_change
        self.on_status = on_status
        self.removed = False


class FakeFeed:
    """In-memory change feed; tests push events and statuses by hand."""

    def __init__(self, auto_subscribe: bool = True):
        self.auto_subscribe = auto_subscribe
        self.fail_next: BackendError | None = None
        self.status_on_subscribe: ChannelStatus | None = None
        self.channels: list[FakeChannel] = []

    @property
    def open_channels(self) -> list[FakeChannel]:
        return [c for c in self.channels if not c.removed]

    def subscribe(self, spec, on_change, on_status) -> FakeChannel:
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc
        channel = FakeChannel(f"{spec.table}-changes-{len(self.channels) + 1}", spec, on_change, on_status)
        self.channels.append(channel)
        if self.status_on_subscribe is not None:
            on_status(self.status_on_subscribe)
        elif self.auto_subscribe:
            on_status(ChannelStatus.SUBSCRIBED)
        return channel

    def remove_channel(self, handle: FakeChannel) -> None:
        handle.removed = True

    def emit(self, kind: ChangeKind = ChangeKind.INSERT, new: dict | None = None, channel: FakeChannel | None = None) -> None:
        target = channel or self.open_channels[-1]
        target.on_change(RowChange(table=target.spec.table, kind=kind, new=new or {}))

    def status(self, status: ChannelStatus, channel: FakeChannel | None = None) -> None:
        target = channel or self.channels[-1]
        target.on_status(status)


class FakeBackend:
    """PostgREST-like backend served through httpx.MockTransport."""

    def __init__(self, tables: dict[str, list[dict[str, Any]]] | None = None):
        self.tables = tables or {}
        self.users = {"token-1": {"id": OWNER, "email": "owner@example.com"}}
        self.requests: list[httpx.Request] = []
        self.fail_tables: dict[str, int] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/auth/v1/user":
            token = request.headers.get("Authorization", "").removeprefix("Bearer ")
            user = self.users.get(token)
            if user is None:
                return httpx.Response(401, json={"message": "invalid token"})
            return httpx.Response(200, json=user)

        table = path.removeprefix("/rest/v1/")
        if table in self.fail_tables:
            return httpx.Response(self.fail_tables[table], json={"message": "boom"})
        if request.method == "GET":
            rows = self.tables.get(table, [])
            params = dict(request.url.params)
            for column, expr in params.items():
                if column in ("select", "order", "limit") or not expr.startswith("eq."):
                    continue
                rows = [r for r in rows if str(r.get(column)) == expr[3:]]
            if "limit" in params:
                rows = rows[: int(params["limit"])]
            return httpx.Response(200, json=rows)
        if request.method == "POST":
            row = json.loads(request.content)
            self.tables.setdefault(table, []).append(row)
            return httpx.Response(201, json=[row])
        return httpx.Response(204)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def table_requests(self, table: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == f"/rest/v1/{table}"]


class FakeGateway:
    """OpenAI-compatible completion gateway with canned replies."""

    def __init__(self, reply: str = "Restock atta\nPush festive combos\nCut delivery costs"):
        self.reply = reply
        self.status = 200
        self.calls: list[dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(json.loads(request.content))
        if self.status != 200:
            return httpx.Response(self.status, text="gateway says no")
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": self.reply}}]})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def visibility() -> VisibilitySignal:
    return VisibilitySignal()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend({
        "Sales": [
            {"id": 1, "Product": "Atta 5kg", "Amount": 250, "Quantity": 1, "Date": "2026-10-19", "User_id": OWNER},
            {"id": 2, "Product": "Rice 1kg", "Amount": 90, "Quantity": 2, "Date": "2026-10-18", "User_id": OWNER},
            {"id": 3, "Product": "Dal", "Amount": 400, "Quantity": 3, "Date": "2026-10-19", "User_id": "someone-else"},
        ],
        "Inventory": [
            {"id": 10, "Item_name": "Atta 5kg", "Stock quantity": 4, "Price_per_unit": 250, "Category": "Grocery", "user_id": OWNER},
            {"id": 11, "Item_name": "Soap", "Stock quantity": 40, "Price_per_unit": 30, "Category": "Personal care", "user_id": OWNER},
        ],
        "finance": [
            {"id": 20, "type": "income", "amount": 1000, "category": "Sales", "date": "2026-10-02", "user_id": OWNER},
            {"id": 21, "type": "expense", "amount": 300, "category": "Rent", "date": "2026-10-03", "user_id": OWNER},
            {"id": 22, "type": "expense", "amount": 100, "category": "Transport", "date": "2026-09-20", "user_id": OWNER},
        ],
        "bills": [
            {"id": 30, "total_amount": 500, "paid_amount": 200, "status": "partial", "user_id": OWNER},
            {"id": 31, "total_amount": 800, "paid_amount": 800, "status": "paid", "user_id": OWNER},
        ],
        "profiles": [
            {"user_id": OWNER, "full_name": "Ramesh Kumar", "shop_name": "Kumar Kirana", "shop_category": "grocery"},
        ],
    })


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def state(tmp_path):
    s = InsightState(str(tmp_path / "state.db"))
    await s.open()
    yield s
    await s.close()


@pytest.fixture
def config(tmp_path) -> SaathiConfig:
    return SaathiConfig.model_validate({
        "state": {"db_path": str(tmp_path / "state.db")},
        "logging": {"level": "debug", "format": "text"},
    })
