"""
Inventory Service — クエリハンドラ (Read 側)

商品一覧は Product Catalog Cache 経由で返す。
注文サービス向けの価格照会 (lookup) は常に DB から読む。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ...common.cache import ReadCache
from .models import products, stock

CATALOG_KEY = "products:list"


def _product_row(row) -> dict:
    return {
        "id": row.id,
        "sku": row.sku,
        "name": row.name,
        "price_cents": row.price_cents,
        "available_qty": row.available_qty or 0,
    }


def _catalog_query():
    return (
        select(
            products.c.id,
            products.c.sku,
            products.c.name,
            products.c.price_cents,
            stock.c.available_qty,
        )
        .select_from(products.outerjoin(stock, stock.c.product_id == products.c.id))
    )


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        _catalog_query().order_by(products.c.created_at.desc(), products.c.id.desc())
    )
    return [_product_row(row) for row in result.fetchall()]


async def lookup_products(session: AsyncSession, product_ids: list[int]) -> list[dict]:
    """指定 ID の商品スナップショット (SKU・名前・単価) を返す。"""
    result = await session.execute(
        _catalog_query().where(products.c.id.in_(product_ids)).order_by(products.c.id)
    )
    return [_product_row(row) for row in result.fetchall()]


class ProductCatalog:
    """
    Product Catalog Cache — 商品 + 在庫一覧の invalidate-on-write キャッシュ

    get(): キャッシュが有効ならそれを返し、無ければ DB から再計算して TTL 付きで保存。
    invalidate(): 商品・在庫を変更する処理が、成功を返す前に必ず呼ぶ。
    """

    def __init__(self, session_factory: sessionmaker, cache: ReadCache) -> None:
        self.session_factory = session_factory
        self.cache = cache

    async def _load(self) -> list[dict]:
        async with self.session_factory() as session:
            return await list_products(session)

    async def get(self) -> tuple[list[dict], str]:
        return await self.cache.get_or_load(CATALOG_KEY, self._load)

    async def invalidate(self) -> None:
        await self.cache.invalidate(CATALOG_KEY)

    async def invalidate_after_commit(self) -> None:
        await self.cache.invalidate_after_commit(CATALOG_KEY)
