"""
Order Placement Orchestrator — 注文確定フロー

  ┌────────────────────────────────────────────────────────────────┐
  │  1. 入力検証 + カタログ照会 (単価は必ずカタログから取る)            │
  │  2. Inventory Service に在庫引き当てを依頼                        │
  │     └─ 失敗 → ここで終了 (注文行は書かない)                        │
  │  3. 注文 + 明細を INSERT                                          │
  │     └─ 失敗 → 引き当ては残る (補償しない。インシデントとしてログ)     │
  │  4. order.created を発行 (失敗してもログのみ)                      │
  └────────────────────────────────────────────────────────────────┘

分散トランザクションは使わない。手順 3 の失敗時に引き当てを戻す
補償トランザクションは release_on_failure=True の場合だけ試みる。
"""

import logging
from dataclasses import dataclass

import httpx

from ...common.errors import FulfillmentError, OrderWriteFailed, ValidationFailed
from ...common.events import ORDER_CREATED, EventPublisher, OrderCreated
from .aggregate import OrderAggregate, OrderLine
from .clients import InventoryClient
from .commands import OrderStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestedLine:
    product_id: int
    quantity: int
    unit_price_cents: int | None = None


class OrderPlacementOrchestrator:
    def __init__(
        self,
        inventory: InventoryClient,
        store: OrderStore,
        publisher: EventPublisher,
        release_on_failure: bool = False,
    ) -> None:
        self.inventory = inventory
        self.store = store
        self.publisher = publisher
        self.release_on_failure = release_on_failure

    async def place_order(
        self,
        customer_email: str,
        currency: str,
        requested: list[RequestedLine],
    ) -> OrderAggregate:
        if not requested:
            raise ValidationFailed("At least one item is required")
        for line in requested:
            if line.quantity <= 0:
                raise ValidationFailed(f"Quantity must be positive for product_id={line.product_id}")

        # ── Step 1: カタログ照会 ────────────────────
        catalog = await self.inventory.lookup_products(
            sorted({line.product_id for line in requested})
        )
        lines = self._snapshot_lines(requested, catalog)

        # ── Step 2: 在庫引き当て ────────────────────
        reservation = [(line.product_id, line.quantity) for line in lines]
        await self.inventory.reserve(reservation)

        # ── Step 3: 注文作成 ────────────────────────
        try:
            agg = await self.store.create_order(customer_email, currency.upper(), lines)
        except Exception as e:
            logger.critical(
                "INCIDENT: order write failed after stock was reserved; "
                "reservation %s for %s is left applied: %s",
                reservation,
                customer_email,
                e,
            )
            if self.release_on_failure:
                await self._compensate(reservation)
            raise OrderWriteFailed("Order could not be recorded after stock reservation") from e

        # ── Step 4: イベント発行 ────────────────────
        await self.publisher.publish(
            ORDER_CREATED,
            OrderCreated(
                order_id=agg.id,
                customer_email=agg.customer_email,
                total_cents=agg.total_cents,
                currency=agg.currency,
            ),
        )
        return agg

    @staticmethod
    def _snapshot_lines(
        requested: list[RequestedLine],
        catalog: dict[int, dict],
    ) -> list[OrderLine]:
        """カタログの SKU・名前・単価で明細スナップショットを作る。"""
        lines = []
        for line in requested:
            product = catalog.get(line.product_id)
            if product is None:
                raise ValidationFailed(f"Unknown product_id={line.product_id}")
            price = product["price_cents"]
            if line.unit_price_cents is not None and line.unit_price_cents != price:
                raise ValidationFailed(
                    f"Price mismatch for product_id={line.product_id}: "
                    f"submitted {line.unit_price_cents}, catalog {price}"
                )
            lines.append(
                OrderLine(
                    product_id=line.product_id,
                    sku=product["sku"],
                    name=product["name"],
                    unit_price_cents=price,
                    quantity=line.quantity,
                )
            )
        return lines

    async def _compensate(self, reservation: list[tuple[int, int]]) -> None:
        try:
            await self.inventory.release(reservation)
        except (httpx.HTTPError, FulfillmentError):
            logger.critical("INCIDENT: compensating release failed for %s", reservation)
        else:
            logger.warning("Compensating release applied for %s", reservation)
