from uuid import uuid4

import pytest

from fulfillment.common.cache import SOURCE_CACHE, SOURCE_DB
from fulfillment.common.errors import OrderNotFound, ValidationFailed
from fulfillment.order.app.aggregate import (
    OrderAggregate,
    OrderLine,
    OrderStatus,
    PaymentOutcome,
)
from tests.conftest import postgres_statements


def widget_lines() -> list[OrderLine]:
    return [
        OrderLine(product_id=1, sku="W-1", name="Widget", unit_price_cents=1999, quantity=2),
        OrderLine(product_id=2, sku="G-1", name="Gadget", unit_price_cents=500, quantity=1),
    ]


def test_total_is_sum_of_line_totals():
    agg = OrderAggregate(id="o-1", customer_email="a@example.com", currency="USD", lines=widget_lines())

    assert [line.line_total_cents for line in agg.lines] == [3998, 500]
    assert agg.total_cents == 4498
    assert agg.summary() == {
        "orderId": "o-1",
        "status": "CREATED",
        "total_cents": 4498,
        "currency": "USD",
    }


def test_payment_signal_overwrites_status():
    agg = OrderAggregate(id="o-1", customer_email="a@example.com", currency="USD")

    assert agg.apply_payment_signal(PaymentOutcome.CONFIRMED) is OrderStatus.PAID
    assert agg.apply_payment_signal(PaymentOutcome.CONFIRMED) is OrderStatus.PAID
    assert agg.apply_payment_signal(PaymentOutcome.FAILED) is OrderStatus.CANCELLED


async def test_create_order_persists_lines_and_total(order_store):
    agg = await order_store.create_order("a@example.com", "USD", widget_lines())

    payload, source = await order_store.get_order(agg.id)

    assert source == SOURCE_DB
    assert payload["order"]["status"] == "CREATED"
    assert payload["order"]["total_cents"] == 4498
    assert [item["line_total_cents"] for item in payload["items"]] == [3998, 500]
    assert {item["order_id"] for item in payload["items"]} == {agg.id}


async def test_create_order_requires_lines(order_store):
    with pytest.raises(ValidationFailed):
        await order_store.create_order("a@example.com", "USD", [])


async def test_confirmed_signal_twice_keeps_order_paid(order_store, caplog):
    agg = await order_store.create_order("a@example.com", "USD", widget_lines())

    first = await order_store.apply_payment_signal(agg.id, PaymentOutcome.CONFIRMED)
    second = await order_store.apply_payment_signal(agg.id, PaymentOutcome.CONFIRMED)

    assert first.status is OrderStatus.PAID
    assert second.status is OrderStatus.PAID
    assert second.total_cents == 4498
    assert "re-applied" in caplog.text


async def test_failed_signal_cancels_order(order_store):
    agg = await order_store.create_order("a@example.com", "USD", widget_lines())

    result = await order_store.apply_payment_signal(agg.id, PaymentOutcome.FAILED)

    assert result.status is OrderStatus.CANCELLED
    payload, _ = await order_store.get_order(agg.id)
    assert payload["order"]["status"] == "CANCELLED"


async def test_signal_for_unknown_order_is_not_found(order_store):
    missing = str(uuid4())

    with pytest.raises(OrderNotFound) as exc_info:
        await order_store.apply_payment_signal(missing, PaymentOutcome.CONFIRMED)

    assert exc_info.value.order_id == missing


async def test_cached_read_is_invalidated_by_payment_signal(order_store):
    agg = await order_store.create_order("a@example.com", "USD", widget_lines())
    await order_store.get_order(agg.id)
    payload, source = await order_store.get_order(agg.id)
    assert source == SOURCE_CACHE
    assert payload["order"]["status"] == "CREATED"

    await order_store.apply_payment_signal(agg.id, PaymentOutcome.CONFIRMED)

    payload, source = await order_store.get_order(agg.id)
    assert source == SOURCE_DB
    assert payload["order"]["status"] == "PAID"


async def test_list_orders(order_store):
    first = await order_store.create_order("a@example.com", "USD", widget_lines())
    second = await order_store.create_order("b@example.com", "EUR", widget_lines()[:1])

    items = await order_store.list_orders()

    assert {item["id"] for item in items} == {first.id, second.id}


async def test_payment_signal_locks_the_order_row(order_store, order_resources):
    agg = await order_store.create_order("a@example.com", "USD", widget_lines())

    with postgres_statements(order_resources.engine) as statements:
        await order_store.apply_payment_signal(agg.id, PaymentOutcome.CONFIRMED)

    [locking] = [sql for sql in statements if sql.startswith("SELECT") and "FROM orders" in sql]
    assert locking.rstrip().endswith("FOR UPDATE")
