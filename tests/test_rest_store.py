import asyncio
import json

import httpx
import pytest

from errors import PersistenceError
from storage.rest import RestStore, build_filter_params


def test_filter_params():
    params = build_filter_params(
        {"status": "pending", "is_active": True, "receiver_device_id": None},
        {"sender_device_id": "dev_a", "receiver_device_id": "dev_a"},
    )

    assert params == {
        "status": "eq.pending",
        "is_active": "eq.true",
        "receiver_device_id": "is.null",
        "or": "(sender_device_id.eq.dev_a,receiver_device_id.eq.dev_a)",
    }


def make_store(handler, **kwargs):
    return RestStore(
        "http://project.test", "anon-key", transport=httpx.MockTransport(handler), **kwargs
    )


async def test_insert_asks_for_representation():
    seen = []

    def handler(request):
        seen.append(request)
        row = json.loads(request.content)
        return httpx.Response(201, json=[{"id": "t1", **row}])

    store = make_store(handler)
    stored = await store.insert("transfers", {"file_name": "a.txt"})

    assert stored == {"id": "t1", "file_name": "a.txt"}
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/rest/v1/transfers"
    assert request.headers["Prefer"] == "return=representation"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["Authorization"] == "Bearer anon-key"
    await store.close()


async def test_select_builds_query():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    store = make_store(handler)
    await store.select(
        "transfers",
        match={"status": "pending"},
        order_by="created_at",
        limit=1,
    )

    params = seen[0].url.params
    assert params["select"] == "*"
    assert params["status"] == "eq.pending"
    assert params["order"] == "created_at.desc"
    assert params["limit"] == "1"
    await store.close()


async def test_update_filters_by_match():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[{"id": "t1", "status": "completed"}])

    store = make_store(handler)
    rows = await store.update("transfers", {"id": "t1"}, {"status": "completed"})

    assert rows == [{"id": "t1", "status": "completed"}]
    assert seen[0].method == "PATCH"
    assert seen[0].url.params["id"] == "eq.t1"
    await store.close()


async def test_backend_error_raises_persistence_error():
    def handler(request):
        return httpx.Response(409, json={"message": "duplicate key value"})

    store = make_store(handler)
    with pytest.raises(PersistenceError, match="duplicate key value"):
        await store.insert("transfer_sessions", {"session_code": "ABC123"})
    await store.close()


async def test_network_error_raises_persistence_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    store = make_store(handler)
    with pytest.raises(PersistenceError):
        await store.select("transfers")
    await store.close()


async def test_poll_fires_on_change_only():
    rows = [{"id": "t1", "updated_at": "2024-01-01T00:00:00+00:00"}]

    def handler(request):
        return httpx.Response(200, json=rows)

    store = make_store(handler, poll_interval=0.01)
    events = []

    async def on_change(event):
        events.append(event)

    subscription = store.subscribe("transfers", on_change, any_of={"sender_device_id": "dev_a"})
    await asyncio.sleep(0.05)
    assert events == []

    rows[0] = {"id": "t1", "updated_at": "2024-01-01T00:01:00+00:00"}
    for _ in range(50):
        if events:
            break
        await asyncio.sleep(0.01)

    subscription.unsubscribe()
    assert len(events) == 1
    assert events[0].table == "transfers"
    await store.close()
