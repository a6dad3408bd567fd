"""HTTP API tests against the ASGI app with a test database."""

from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from pricewatch.api.deps import get_database
from pricewatch.api.routes import notifications as notification_routes
from pricewatch.api.routes import products as product_routes
from pricewatch.main import app
from pricewatch.notify.engine import NotificationEngine
from pricewatch.notify.rules import PriceUpdate
from pricewatch.services.products import ProductService
from pricewatch.stock.tracker import StockHistoryTracker
from pricewatch.worker.monitor import CheckRunner
from pricewatch.worker.product_lock import ProductLockManager


def dec(value):
    return Decimal(str(value))


@pytest.fixture
def service(session_factory, fake_pipeline, dispatcher, monkeypatch):
    notifier = NotificationEngine(session_factory=session_factory, dispatcher=dispatcher)
    locks = ProductLockManager()
    tracker = StockHistoryTracker()
    runner = CheckRunner(
        session_factory=session_factory,
        pipeline=fake_pipeline,
        notifier=notifier,
        locks=locks,
        tracker=tracker,
        max_concurrent=2,
    )
    service = ProductService(
        pipeline=fake_pipeline,
        runner=runner,
        notifier=notifier,
        tracker=tracker,
        locks=locks,
    )
    monkeypatch.setattr(product_routes, "product_service", service)
    monkeypatch.setattr(notification_routes, "product_service", service)
    return service


@pytest_asyncio.fixture
async def client(session_factory, service, user):
    async def override_get_database():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_database] = override_get_database
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-User-Id": str(user.id)},
    ) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_caller_identity_required(client, user):
    assert (await client.get("/api/products", headers={"X-User-Id": "abc"})).status_code == 401
    assert (await client.get("/api/products", headers={"X-User-Id": str(user.id + 100)})).status_code == 401
    assert (await client.get("/api/products")).status_code == 200


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_create_product(client, fake_pipeline, make_run):
    url = "https://shop.example.com/item/create"
    fake_pipeline.runs = [make_run.accepted(url, "19.99", name="Coffee Grinder")]

    response = await client.post("/api/products", json={"url": url, "target_price": "15.00"})

    assert response.status_code == 201
    body = response.json()
    assert body["name"] == "Coffee Grinder"
    assert dec(body["current_price"]) == Decimal("19.99")
    assert body["currency"] == "USD"
    assert body["stock_status"] == "in_stock"
    assert dec(body["target_price"]) == Decimal("15.00")
    assert body["anchor_price"] is None

    duplicate = await client.post("/api/products", json={"url": url})
    assert duplicate.status_code == 409

    listed = (await client.get("/api/products")).json()
    assert [p["id"] for p in listed] == [body["id"]]


@pytest.mark.asyncio
async def test_create_rejects_bad_url_and_failed_extraction(client, fake_pipeline, make_run):
    assert (await client.post("/api/products", json={"url": "ftp://example.com/x"})).status_code == 422

    url = "https://shop.example.com/item/empty"
    fake_pipeline.runs = [make_run.failed(url)]
    response = await client.post("/api/products", json={"url": url})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_create_with_disagreement_returns_review(client, fake_pipeline, make_run):
    url = "https://shop.example.com/item/variants"
    fake_pipeline.runs = [make_run.review(url, "49.99", "59.99")]

    response = await client.post("/api/products", json={"url": url})

    assert response.status_code == 200
    body = response.json()
    assert body["needs_review"] is True
    assert [dec(c["price"]) for c in body["candidates"]] == [Decimal("49.99"), Decimal("59.99")]
    assert dec(body["suggested_price"]["price"]) == Decimal("49.99")
    assert (await client.get("/api/products")).json() == []

    fake_pipeline.runs = [make_run.review(url, "49.99", "59.99")]
    chosen = await client.post(
        "/api/products",
        json={"url": url, "chosen_price": "59.99", "chosen_method": "generic-css"},
    )

    assert chosen.status_code == 201
    body = chosen.json()
    assert dec(body["anchor_price"]) == Decimal("59.99")
    assert dec(body["current_price"]) == Decimal("59.99")
    assert body["preferred_method"] == "generic-css"


@pytest.mark.asyncio
async def test_resolve_pending_review(client, make_product, dispatcher):
    product = await make_product(
        review_pending=True,
        target_price=Decimal("13.00"),
        review_candidates=[
            {"price": "12.00", "currency": "USD", "method": "json-ld", "confidence": 0.9, "context": None},
            {"price": "15.00", "currency": "USD", "method": "generic-css", "confidence": 0.6, "context": None},
        ],
        review_suggested_price={"price": "12.00", "currency": "USD"},
    )

    bad = await client.post(f"/api/products/{product.id}/review", json={"price": "14.00", "method": "json-ld"})
    assert bad.status_code == 400

    response = await client.post(
        f"/api/products/{product.id}/review",
        json={"price": "12.00", "method": "json-ld"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["review_pending"] is False
    assert body["review_candidates"] is None
    assert dec(body["anchor_price"]) == Decimal("12.00")
    assert body["preferred_method"] == "json-ld"
    assert dec(body["current_price"]) == Decimal("12.00")
    assert [p.notification_type for p in dispatcher.payloads] == ["price_target"]

    again = await client.post(f"/api/products/{product.id}/review", json={"price": "12.00", "method": "json-ld"})
    assert again.status_code == 400


@pytest.mark.asyncio
async def test_unknown_product_is_404(client):
    assert (await client.get("/api/products/9999")).status_code == 404
    assert (await client.delete("/api/products/9999")).status_code == 404
    assert (await client.post("/api/products/9999/refresh")).status_code == 404
    assert (await client.get("/api/products/9999/prices")).status_code == 404


@pytest.mark.asyncio
async def test_update_clamps_interval_and_keeps_schedule_fields(client, make_product):
    product = await make_product()

    response = await client.put(
        f"/api/products/{product.id}",
        json={"refresh_interval": 10, "name": "Renamed", "notify_back_in_stock": True},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["refresh_interval"] == 300
    assert body["name"] == "Renamed"
    assert body["notify_back_in_stock"] is True


@pytest.mark.asyncio
async def test_refresh_and_history_endpoints(client, make_product, make_run, fake_pipeline):
    product = await make_product()
    fake_pipeline.runs = [make_run.accepted(product.url, "21.00")]

    response = await client.post(f"/api/products/{product.id}/refresh")

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "accepted"
    assert dec(body["product"]["current_price"]) == Decimal("21.00")
    assert body["product"]["last_checked"] is not None

    prices = (await client.get(f"/api/products/{product.id}/prices", params={"days": 7})).json()
    assert [dec(p["price"]) for p in prices] == [Decimal("21.00")]

    stock = (await client.get(f"/api/products/{product.id}/stock", params={"window_days": 30})).json()
    assert [e["status"] for e in stock["history"]] == ["in_stock"]
    assert stock["stats"]["current_status"] == "in_stock"
    assert stock["stats"]["outage_count"] == 0


@pytest.mark.asyncio
async def test_bulk_pause_and_delete(client, make_product):
    first = await make_product()
    second = await make_product()

    response = await client.post("/api/products/bulk/pause", json={"ids": [first.id, second.id], "paused": True})
    assert response.json()["updated"] == 2
    assert (await client.get(f"/api/products/{first.id}")).json()["checking_paused"] is True

    assert (await client.delete(f"/api/products/{second.id}")).status_code == 200
    assert (await client.get(f"/api/products/{second.id}")).status_code == 404


@pytest.mark.asyncio
async def test_notification_history_endpoints(client, service, make_product):
    product = await make_product(price_drop_threshold=Decimal("1.00"), target_price=Decimal("9.50"))
    await service.notifier.handle_update(
        PriceUpdate(product_id=product.id, new_price=Decimal("9.00"), old_price=Decimal("10.00"))
    )

    history = (await client.get("/api/notifications/history")).json()
    assert history["total"] == 2
    assert {item["notification_type"] for item in history["items"]} == {"price_drop", "price_target"}

    drops = (await client.get("/api/notifications/history", params={"type": "price_drop"})).json()
    assert drops["total"] == 1
    assert drops["items"][0]["channels_notified"] == ["telegram"]

    assert (await client.get("/api/notifications/history", params={"type": "bogus"})).status_code == 422
    assert len((await client.get("/api/notifications/recent", params={"limit": 1})).json()) == 1
    assert (await client.get("/api/notifications/count")).json() == {"count": 2}


@pytest.mark.asyncio
async def test_engine_status(client):
    body = (await client.get("/api/status")).json()

    assert body["scheduler_running"] is False
    assert body["next_poll_at"] is None
    assert body["products_in_check"] == 0
    assert isinstance(body["ai_available"], bool)
    assert "call_count" in body["llm"]
