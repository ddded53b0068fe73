import logging
from uuid import uuid4

import httpx
import pytest_asyncio

from fulfillment.common.events import ORDER_CREATED, PAYMENT_CONFIRMED
from tests.conftest import PAYMENT_SECRET


@pytest_asyncio.fixture
async def catalog_ids(add_product):
    widget = await add_product("WIDGET", 1999, 10, name="Widget")
    gadget = await add_product("GADGET", 500, 3, name="Gadget")
    return widget, gadget


async def stock_of(inventory_client) -> dict[int, int]:
    items = (await inventory_client.get("/inventory/products")).json()["items"]
    return {item["id"]: item["available_qty"] for item in items}


async def place(order_client, items, email="buyer@example.com"):
    return await order_client.post(
        "/orders", json={"customer_email": email, "currency": "usd", "items": items}
    )


async def test_place_order_uses_catalog_prices(
    order_client, inventory_client, catalog_ids, publisher
):
    widget, gadget = catalog_ids

    resp = await place(
        order_client,
        [{"product_id": widget, "quantity": 2}, {"product_id": gadget, "quantity": 1}],
    )

    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["status"] == "CREATED"
    assert body["total_cents"] == 4498
    assert body["currency"] == "USD"
    assert await stock_of(inventory_client) == {widget: 8, gadget: 2}

    detail = (await order_client.get(f"/orders/{body['orderId']}")).json()
    assert [(i["sku"], i["unit_price_cents"]) for i in detail["items"]] == [
        ("WIDGET", 1999),
        ("GADGET", 500),
    ]

    [event] = publisher.of(ORDER_CREATED)
    assert event.order_id == body["orderId"]
    assert event.total_cents == 4498


async def test_submitted_price_must_match_catalog(order_client, inventory_client, catalog_ids):
    widget, _ = catalog_ids

    resp = await place(order_client, [{"product_id": widget, "quantity": 1, "unit_price_cents": 1}])

    assert resp.status_code == 400
    assert resp.json()["error"] == "ValidationFailed"
    assert (await stock_of(inventory_client))[widget] == 10


async def test_unknown_product_is_rejected_before_reserving(order_client, catalog_ids):
    resp = await place(order_client, [{"product_id": 9999, "quantity": 1}])

    assert resp.status_code == 400


async def test_insufficient_stock_writes_no_order(order_client, catalog_ids, publisher):
    _, gadget = catalog_ids

    resp = await place(order_client, [{"product_id": gadget, "quantity": 4}])

    assert resp.status_code == 409
    assert resp.json()["error"] == "StockReservationFailed"
    assert (await order_client.get("/orders")).json() == {"items": []}
    assert publisher.published == []


async def test_invalid_order_request_is_400(order_client):
    resp = await order_client.post(
        "/orders", json={"customer_email": "not-an-email", "items": []}
    )

    assert resp.status_code == 400
    assert resp.json()["errors"]


async def test_confirmed_webhook_marks_paid_and_publishes(order_client, catalog_ids, publisher):
    widget, _ = catalog_ids
    order_id = (await place(order_client, [{"product_id": widget, "quantity": 2}])).json()["orderId"]

    resp = await order_client.post(
        "/payments/webhook",
        json={"orderId": order_id, "paymentStatus": "CONFIRMED", "signature": PAYMENT_SECRET},
    )

    assert resp.status_code == 200
    assert resp.json() == {
        "ok": True,
        "orderId": order_id,
        "paymentStatus": "CONFIRMED",
        "status": "PAID",
    }
    [event] = publisher.of(PAYMENT_CONFIRMED)
    assert event.amount_cents == 3998
    assert event.customer_email == "buyer@example.com"


async def test_webhook_without_signature_is_accepted(order_client, catalog_ids):
    widget, _ = catalog_ids
    order_id = (await place(order_client, [{"product_id": widget, "quantity": 1}])).json()["orderId"]

    resp = await order_client.post("/payments/webhook", json={"orderId": order_id})

    assert resp.json()["status"] == "PAID"


async def test_webhook_with_wrong_signature_is_rejected(order_client, catalog_ids, publisher):
    widget, _ = catalog_ids
    order_id = (await place(order_client, [{"product_id": widget, "quantity": 1}])).json()["orderId"]

    resp = await order_client.post(
        "/payments/webhook", json={"orderId": order_id, "signature": "forged"}
    )

    assert resp.status_code == 401
    assert (await order_client.get(f"/orders/{order_id}")).json()["order"]["status"] == "CREATED"
    assert publisher.of(PAYMENT_CONFIRMED) == []


async def test_duplicate_confirmation_republishes(order_client, catalog_ids, publisher):
    widget, _ = catalog_ids
    order_id = (await place(order_client, [{"product_id": widget, "quantity": 1}])).json()["orderId"]
    signal = {"orderId": order_id, "paymentStatus": "CONFIRMED", "signature": PAYMENT_SECRET}

    first = await order_client.post("/payments/webhook", json=signal)
    second = await order_client.post("/payments/webhook", json=signal)

    assert first.json()["status"] == second.json()["status"] == "PAID"
    assert len(publisher.of(PAYMENT_CONFIRMED)) == 2


async def test_failed_payment_cancels_without_event(order_client, catalog_ids, publisher):
    widget, _ = catalog_ids
    order_id = (await place(order_client, [{"product_id": widget, "quantity": 1}])).json()["orderId"]

    resp = await order_client.post(
        "/payments/webhook", json={"orderId": order_id, "paymentStatus": "FAILED"}
    )

    assert resp.json()["status"] == "CANCELLED"
    assert publisher.of(PAYMENT_CONFIRMED) == []


async def test_webhook_for_unknown_order_is_404(order_client):
    missing = str(uuid4())

    resp = await order_client.post("/payments/webhook", json={"orderId": missing})

    assert resp.status_code == 404
    assert resp.json()["orderId"] == missing


async def test_get_unknown_order_is_404(order_client):
    resp = await order_client.get(f"/orders/{uuid4()}")

    assert resp.status_code == 404
    assert resp.json()["error"] == "OrderNotFound"


async def test_unreachable_inventory_is_retryable(order_app, order_client):
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    inventory = order_app.state.orchestrator.inventory
    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as broken:
        inventory.client = broken
        resp = await place(order_client, [{"product_id": 1, "quantity": 1}])

    assert resp.status_code == 503
    assert resp.json()["retryable"] is True


async def test_order_write_failure_leaves_reservation_applied(
    order_client, order_store, inventory_client, catalog_ids, publisher, monkeypatch, caplog
):
    widget, _ = catalog_ids

    async def broken_create(*args, **kwargs):
        raise RuntimeError("orders db is gone")

    monkeypatch.setattr(order_store, "create_order", broken_create)
    with caplog.at_level(logging.CRITICAL, logger="fulfillment.order.app.orchestrator"):
        resp = await place(order_client, [{"product_id": widget, "quantity": 3}])

    assert resp.status_code == 500
    assert resp.json()["error"] == "OrderWriteFailed"
    assert (await stock_of(inventory_client))[widget] == 7
    assert "INCIDENT" in caplog.text
    assert publisher.published == []


async def test_order_write_failure_releases_when_enabled(
    order_app, order_client, order_store, inventory_client, catalog_ids, monkeypatch
):
    widget, _ = catalog_ids

    async def broken_create(*args, **kwargs):
        raise RuntimeError("orders db is gone")

    monkeypatch.setattr(order_store, "create_order", broken_create)
    order_app.state.orchestrator.release_on_failure = True

    resp = await place(order_client, [{"product_id": widget, "quantity": 3}])

    assert resp.status_code == 500
    assert (await stock_of(inventory_client))[widget] == 10


async def test_publish_failure_does_not_fail_the_order(order_client, catalog_ids, publisher):
    widget, _ = catalog_ids
    publisher.fail = True

    resp = await place(order_client, [{"product_id": widget, "quantity": 1}])

    assert resp.status_code == 201
    assert publisher.published == []


async def test_health(order_client):
    assert (await order_client.get("/health")).json() == {"ok": True, "service": "order-service"}
