"""
Order Service — コマンドハンドラ (Write 側)

Order Aggregate Store: 注文と明細の唯一の書き手。

  create_order:         注文 + 明細を 1 トランザクションで INSERT (合計はサーバー側で計算)
  apply_payment_signal: 注文行をロック → 状態を上書き → キャッシュ無効化 → コミット

イベント発行はここでは行わない。コミット後に呼び出し側
(Orchestrator / Payment Confirmation Handler) が発行する。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import insert, update
from sqlalchemy.orm import sessionmaker

from ...common.cache import ReadCache
from ...common.errors import OrderNotFound, ValidationFailed
from . import queries
from .aggregate import OrderAggregate, OrderLine, OrderStatus, PaymentOutcome
from .models import order_items, orders

logger = logging.getLogger(__name__)


def order_cache_key(order_id: str) -> str:
    return f"order:{order_id}"


class OrderStore:
    def __init__(self, session_factory: sessionmaker, cache: ReadCache) -> None:
        self.session_factory = session_factory
        self.cache = cache

    async def create_order(
        self,
        customer_email: str,
        currency: str,
        lines: list[OrderLine],
    ) -> OrderAggregate:
        """注文作成コマンド"""
        if not lines:
            raise ValidationFailed("An order needs at least one line")

        now = datetime.now(timezone.utc)
        agg = OrderAggregate(
            id=str(uuid4()),
            customer_email=customer_email,
            currency=currency,
            lines=list(lines),
            status=OrderStatus.CREATED,
            created_at=now,
            updated_at=now,
        )

        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    insert(orders).values(
                        id=agg.id,
                        customer_email=agg.customer_email,
                        total_cents=agg.total_cents,
                        currency=agg.currency,
                        status=agg.status.value,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.execute(
                    insert(order_items),
                    [{"order_id": agg.id, **line.to_dict()} for line in agg.lines],
                )

        await self.cache.invalidate_after_commit(order_cache_key(agg.id))
        logger.info("Created order %s total_cents=%s", agg.id, agg.total_cents)
        return agg

    async def apply_payment_signal(
        self,
        order_id: str,
        outcome: PaymentOutcome,
    ) -> OrderAggregate:
        """
        支払いシグナル適用コマンド

        注文行の排他ロック下で状態を上書きする。現在の状態は確認しないため、
        PAID の注文への CONFIRMED 再配信は PAID を再適用する。
        """
        key = order_cache_key(order_id)

        async with self.session_factory() as session:
            async with session.begin():
                agg = await queries.load_aggregate(session, order_id, for_update=True)
                if agg is None:
                    raise OrderNotFound(order_id)

                previous = agg.status
                status = agg.apply_payment_signal(outcome)
                agg.updated_at = datetime.now(timezone.utc)
                await session.execute(
                    update(orders)
                    .where(orders.c.id == order_id)
                    .values(status=status.value, updated_at=agg.updated_at)
                )
                await self.cache.invalidate(key)

        await self.cache.invalidate_after_commit(key)
        if previous is not OrderStatus.CREATED:
            logger.warning(
                "Payment signal %s re-applied to order %s already in %s",
                outcome.value,
                order_id,
                previous.value,
            )
        logger.info("Order %s: %s -> %s", order_id, previous.value, status.value)
        return agg

    async def get_order(self, order_id: str) -> tuple[dict, str]:
        """キャッシュ優先で注文を読む。戻り値は ({order, items}, source)。"""

        async def load() -> dict | None:
            async with self.session_factory() as session:
                return await queries.get_order(session, order_id)

        payload, source = await self.cache.get_or_load(order_cache_key(order_id), load)
        if payload is None:
            raise OrderNotFound(order_id)
        return payload, source

    async def list_orders(self) -> list[dict]:
        async with self.session_factory() as session:
            return await queries.list_orders(session)
