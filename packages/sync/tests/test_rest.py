"""Tests for the REST row client."""

import httpx
import pytest

from saathi_sync import rest as rest_module
from saathi_sync.backend import BackendError
from saathi_sync.models import INVENTORY, SALES
from saathi_sync.rest import RestClient


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(rest_module, "RETRY_BASE_SECONDS", 0)


@pytest.fixture
async def client(backend):
    c = RestClient("http://backend.test/", "anon-key", transport=backend.transport())
    await c.open()
    yield c
    await c.close()


async def test_select_scopes_rows_to_owner(client, backend):
    rows = await client.select(SALES, "owner-1")
    assert [r["id"] for r in rows] == [1, 2]

    (request,) = backend.table_requests("Sales")
    assert request.url.params["User_id"] == "eq.owner-1"
    assert request.url.params["select"] == "*"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["Authorization"] == "Bearer anon-key"


async def test_select_passes_filters_order_and_limit(client, backend):
    await client.select(
        INVENTORY,
        "owner-1",
        filters={"Category": "eq.Grocery"},
        order='"Stock quantity".asc',
        limit=50,
        token="user-token",
    )
    (request,) = backend.table_requests("Inventory")
    assert request.url.params["user_id"] == "eq.owner-1"
    assert request.url.params["Category"] == "eq.Grocery"
    assert request.url.params["order"] == '"Stock quantity".asc'
    assert request.url.params["limit"] == "50"
    assert request.headers["Authorization"] == "Bearer user-token"


async def test_select_one(client):
    row = await client.select_one(INVENTORY, "owner-1")
    assert row["Item_name"] == "Atta 5kg"
    assert await client.select_one(INVENTORY, "nobody") is None


async def test_insert_adds_owner_column(client, backend):
    created = await client.insert(SALES, "owner-1", {"Product": "Sugar", "Amount": 45})
    assert created["User_id"] == "owner-1"
    assert backend.tables["Sales"][-1]["Product"] == "Sugar"
    request = backend.requests[-1]
    assert request.headers["Prefer"] == "return=representation"


async def test_update_and_delete_filter_by_id_and_owner(client, backend):
    await client.update(SALES, "owner-1", 2, {"Amount": 95})
    await client.delete(SALES, "owner-1", 2)
    update, delete = backend.requests[-2:]
    assert update.method == "PATCH"
    assert delete.method == "DELETE"
    for request in (update, delete):
        assert request.url.params["id"] == "eq.2"
        assert request.url.params["User_id"] == "eq.owner-1"


async def test_client_error_is_not_retried(client, backend):
    backend.fail_tables["Sales"] = 400
    with pytest.raises(BackendError) as exc_info:
        await client.select(SALES, "owner-1")
    assert exc_info.value.status == 400
    assert len(backend.table_requests("Sales")) == 1


async def test_server_error_is_retried_then_raised(client, backend):
    backend.fail_tables["Sales"] = 503
    with pytest.raises(BackendError) as exc_info:
        await client.select(SALES, "owner-1")
    assert exc_info.value.status == 503
    assert len(backend.table_requests("Sales")) == rest_module.MAX_RETRIES


async def test_transient_failure_recovers():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused", request=request)
        if len(attempts) == 2:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json=[{"id": 1}])

    async with RestClient("http://backend.test", "k", transport=httpx.MockTransport(handler)) as c:
        assert await c.select(SALES, "owner-1") == [{"id": 1}]
    assert len(attempts) == 3


async def test_get_user(client):
    user = await client.get_user("token-1")
    assert user["id"] == "owner-1"
    assert await client.get_user("forged") is None


async def test_check_health():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    async with RestClient("http://backend.test", "k", transport=httpx.MockTransport(handler)) as c:
        assert await c.check_health() is True

    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with RestClient("http://backend.test", "k", transport=httpx.MockTransport(down)) as c:
        assert await c.check_health() is False
