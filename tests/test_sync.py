import json
import threading

import httpx
import pytest

from conftest import json_response
from easybroker.sync import dedupe_by_public_id, sync_properties
from storage.memory_store import InMemoryStore


def _listing(public_id, **extra):
    return {"public_id": public_id, "title": f"Casa {public_id}", "status": "available", **extra}


def test_dedupe_keeps_first_occurrence():
    items = [{"public_id": "EB-1", "v": 1}, {"public_id": "EB-2"}, {"public_id": "EB-1", "v": 2}, {"title": "no id"}]
    assert dedupe_by_public_id(items) == [{"public_id": "EB-1", "v": 1}, {"public_id": "EB-2"}]


@pytest.mark.asyncio
async def test_sync_imports_listings_with_details(make_client):
    def route(request):
        path = request.url.path
        if path == "/v1/properties":
            return json_response(
                {
                    "content": [
                        _listing("EB-1", location="Juriquilla, Querétaro"),
                        _listing("EB-2"),
                        _listing("EB-1"),
                    ],
                    "pagination": {"next_page": None},
                }
            )
        public_id = path.rsplit("/", 1)[-1]
        return json_response(
            {
                "public_id": public_id,
                "description": f"Descripción {public_id}",
                "location": {"name": "Juriquilla", "city": "Querétaro"},
                "operations": [{"type": "sale", "amount": 3500000, "currency": "MXN"}],
                "property_images": [{"url": "https://img.test/1.jpg"}],
            }
        )

    client, handler = make_client(route)
    store = InMemoryStore()
    report = await sync_properties(client, store, concurrency=2)

    assert report.imported == 2
    assert report.errors == 0
    assert not report.truncated
    record = store.get_property("EB-1")
    assert record["description"] == "Descripción EB-1"
    assert record["location_text"] == "Juriquilla, Querétaro"
    assert record["images"] == [{"url": "https://img.test/1.jpg"}]
    assert json.loads(record["detail_json"])["public_id"] == "EB-1"
    detail_paths = sorted(r.url.path for r in handler.requests if r.url.path != "/v1/properties")
    assert detail_paths == ["/v1/properties/EB-1", "/v1/properties/EB-2"]


@pytest.mark.asyncio
async def test_sync_keeps_listing_when_detail_fails(make_client):
    def route(request):
        if request.url.path == "/v1/properties":
            return json_response({"content": [_listing("EB-9")]})
        return httpx.Response(404, text="gone")

    client, handler = make_client(route)
    store = InMemoryStore()
    report = await sync_properties(client, store, base_delay=0)

    assert report.imported == 1
    assert report.errors == 1
    assert report.failed_ids == ["EB-9"]
    assert store.get_property("EB-9")["title"] == "Casa EB-9"
    # 404 is not retried
    assert sum(1 for r in handler.requests if r.url.path.endswith("EB-9")) == 1


@pytest.mark.asyncio
async def test_sync_retries_transient_detail_errors(make_client):
    attempts = {"count": 0}

    def route(request):
        if request.url.path == "/v1/properties":
            return json_response({"content": [_listing("EB-3")]})
        attempts["count"] += 1
        if attempts["count"] < 3:
            return httpx.Response(503)
        return json_response({"public_id": "EB-3", "description": "ok"})

    client, _ = make_client(route)
    store = InMemoryStore()
    report = await sync_properties(client, store, base_delay=0)

    assert attempts["count"] == 3
    assert report.errors == 0
    assert store.get_property("EB-3")["description"] == "ok"


@pytest.mark.asyncio
async def test_sync_reports_unavailable_catalog(make_client):
    client, _ = make_client(lambda request: httpx.Response(500))
    store = InMemoryStore()
    report = await sync_properties(client, store)
    assert report.unavailable
    assert report.imported == 0
    assert store.properties == {}


class _RejectingStore(InMemoryStore):
    def __init__(self, rejected):
        super().__init__()
        self.rejected = rejected

    def upsert_property(self, record):
        if record["public_id"] in self.rejected:
            raise RuntimeError("Supabase returned no row")
        return super().upsert_property(record)


@pytest.mark.asyncio
async def test_sync_counts_store_failures_and_keeps_going(make_client):
    def route(request):
        if request.url.path == "/v1/properties":
            return json_response({"content": [_listing("EB-1"), _listing("EB-2"), _listing("EB-3")]})
        return json_response({"public_id": request.url.path.rsplit("/", 1)[-1], "description": "ok"})

    client, _ = make_client(route)
    store = _RejectingStore({"EB-2"})
    report = await sync_properties(client, store, base_delay=0)

    assert report.imported == 2
    assert report.errors == 1
    assert report.failed_ids == ["EB-2"]
    assert sorted(store.properties) == ["EB-1", "EB-3"]


class _ThreadRecordingStore(InMemoryStore):
    def __init__(self):
        super().__init__()
        self.threads = set()

    def upsert_property(self, record):
        self.threads.add(threading.get_ident())
        return super().upsert_property(record)


@pytest.mark.asyncio
async def test_store_writes_and_metrics_run_off_the_event_loop(make_client, monkeypatch):
    from telemetry import metrics

    metric_threads = []
    monkeypatch.setattr(metrics, "log_metric", lambda *args, **kwargs: metric_threads.append(threading.get_ident()))

    def route(request):
        if request.url.path == "/v1/properties":
            return json_response({"content": [_listing("EB-1"), _listing("EB-2")]})
        return json_response({"public_id": "x", "description": "ok"})

    client, _ = make_client(route)
    store = _ThreadRecordingStore()
    await sync_properties(client, store, base_delay=0)

    loop_thread = threading.get_ident()
    assert store.threads and loop_thread not in store.threads
    assert len(metric_threads) == 2
    assert loop_thread not in metric_threads
