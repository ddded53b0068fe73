"""
Inventory Service — コマンドハンドラ (Write 側)

Stock Ledger: 複数商品の在庫をまとめて引き当てる (all-or-nothing)。

  1. 同一リクエスト内の重複 product_id を合算
  2. product_id の昇順で在庫行を SELECT ... FOR UPDATE
     (ロック順序を固定し、重なる商品集合を持つ引き当て同士のデッドロックを防ぐ)
  3. ロックした行ごとに available_qty を検証 → 1 件でも不足なら全体をロールバック
  4. 全行を減算 → キャッシュ無効化 (ロック保持中) → コミット → キャッシュ再無効化
"""

import logging
from collections import Counter
from datetime import datetime, timezone

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ...common.errors import (
    InsufficientStock,
    ProductNotFound,
    UnknownProduct,
    ValidationFailed,
)
from .models import products, stock
from .queries import ProductCatalog

logger = logging.getLogger(__name__)


def merge_items(items: list[tuple[int, int]]) -> dict[int, int]:
    """(product_id, quantity) のリストを product_id ごとに合算する。"""
    if not items:
        raise ValidationFailed("At least one item is required")
    merged: Counter[int] = Counter()
    for product_id, quantity in items:
        if quantity <= 0:
            raise ValidationFailed(f"Quantity must be positive for product_id={product_id}")
        merged[product_id] += quantity
    return dict(merged)


class StockLedger:
    """在庫行 (stock) の唯一の書き手"""

    def __init__(self, session_factory: sessionmaker, catalog: ProductCatalog) -> None:
        self.session_factory = session_factory
        self.catalog = catalog

    async def reserve(self, items: list[tuple[int, int]]) -> dict[int, int]:
        """
        在庫引き当てコマンド

        成功時は引き当て後の available_qty を product_id ごとに返す。
        失敗時は InsufficientStock / UnknownProduct を送出し、どの行も変更しない。
        """
        requested = merge_items(items)

        async with self.session_factory() as session:
            async with session.begin():
                remaining: dict[int, int] = {}
                for product_id in sorted(requested):
                    result = await session.execute(
                        select(stock.c.available_qty)
                        .where(stock.c.product_id == product_id)
                        .with_for_update()
                    )
                    row = result.fetchone()
                    if row is None:
                        raise UnknownProduct(product_id)
                    if row.available_qty < requested[product_id]:
                        raise InsufficientStock(
                            product_id, row.available_qty, requested[product_id]
                        )
                    remaining[product_id] = row.available_qty - requested[product_id]

                now = datetime.now(timezone.utc)
                for product_id in sorted(requested):
                    await session.execute(
                        update(stock)
                        .where(stock.c.product_id == product_id)
                        .values(
                            available_qty=stock.c.available_qty - requested[product_id],
                            updated_at=now,
                        )
                    )

                # 行ロックを保持したまま無効化する
                await self.catalog.invalidate()

        await self.catalog.invalidate_after_commit()
        logger.info("Reserved %s", requested)
        return remaining

    async def release(self, items: list[tuple[int, int]]) -> dict[int, int]:
        """
        在庫解放コマンド (補償トランザクション)

        引き当て済みの数量を戻す。ロック順序は reserve と同じ昇順。
        """
        released = merge_items(items)

        async with self.session_factory() as session:
            async with session.begin():
                restored: dict[int, int] = {}
                for product_id in sorted(released):
                    result = await session.execute(
                        select(stock.c.available_qty)
                        .where(stock.c.product_id == product_id)
                        .with_for_update()
                    )
                    row = result.fetchone()
                    if row is None:
                        raise UnknownProduct(product_id)
                    restored[product_id] = row.available_qty + released[product_id]

                now = datetime.now(timezone.utc)
                for product_id in sorted(released):
                    await session.execute(
                        update(stock)
                        .where(stock.c.product_id == product_id)
                        .values(
                            available_qty=stock.c.available_qty + released[product_id],
                            updated_at=now,
                        )
                    )
                await self.catalog.invalidate()

        await self.catalog.invalidate_after_commit()
        logger.warning("Released %s", released)
        return restored


# ── カタログ管理 ─────────────────────────────────


async def create_product(
    session_factory: sessionmaker,
    catalog: ProductCatalog,
    sku: str,
    name: str,
    price_cents: int,
    initial_qty: int,
) -> dict:
    """商品と在庫行を同一トランザクションで作成する。"""
    async with session_factory() as session:
        try:
            async with session.begin():
                result = await session.execute(
                    insert(products)
                    .values(sku=sku, name=name, price_cents=price_cents)
                    .returning(products.c.id)
                )
                product_id = result.scalar_one()
                await session.execute(
                    insert(stock).values(
                        product_id=product_id,
                        available_qty=initial_qty,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                await catalog.invalidate()
        except IntegrityError:
            raise ValidationFailed(f"SKU already exists: {sku}") from None

    await catalog.invalidate_after_commit()
    logger.info("Created product %s (sku=%s, qty=%s)", product_id, sku, initial_qty)
    return {
        "id": product_id,
        "sku": sku,
        "name": name,
        "price_cents": price_cents,
        "available_qty": initial_qty,
    }


async def delete_product(
    session_factory: sessionmaker,
    catalog: ProductCatalog,
    product_id: int,
) -> None:
    async with session_factory() as session:
        async with session.begin():
            await session.execute(delete(stock).where(stock.c.product_id == product_id))
            result = await session.execute(delete(products).where(products.c.id == product_id))
            if result.rowcount == 0:
                raise ProductNotFound(product_id)
            await catalog.invalidate()

    await catalog.invalidate_after_commit()
    logger.info("Deleted product %s", product_id)
