"""
Order Service — クエリハンドラ (Read 側)

注文の読み取りと、行ロック付きの集約ロード。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate, OrderLine, OrderStatus
from .models import order_items, orders


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _order_dict(row) -> dict:
    return {
        "id": row.id,
        "customer_email": row.customer_email,
        "total_cents": row.total_cents,
        "currency": row.currency,
        "status": row.status,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


async def _load_items(session: AsyncSession, order_id: str) -> list:
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.id)
    )
    return result.fetchall()


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文と明細を返す。存在しなければ None。"""
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    items = await _load_items(session, order_id)
    return {
        "order": _order_dict(row),
        "items": [
            {
                "id": item.id,
                "order_id": item.order_id,
                "product_id": item.product_id,
                "sku": item.sku,
                "name": item.name,
                "unit_price_cents": item.unit_price_cents,
                "quantity": item.quantity,
                "line_total_cents": item.line_total_cents,
            }
            for item in items
        ],
    }


async def list_orders(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(orders).order_by(orders.c.created_at.desc()))
    return [_order_dict(row) for row in result.fetchall()]


async def load_aggregate(
    session: AsyncSession,
    order_id: str,
    for_update: bool = False,
) -> OrderAggregate | None:
    """
    注文集約をロードする。

    for_update=True のときは注文行に排他ロックを取る
    (同じ注文への支払いシグナルはここで直列化される)。
    """
    stmt = select(orders).where(orders.c.id == order_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).fetchone()
    if not row:
        return None
    items = await _load_items(session, order_id)
    return OrderAggregate(
        id=row.id,
        customer_email=row.customer_email,
        currency=row.currency,
        status=OrderStatus(row.status),
        created_at=row.created_at,
        updated_at=row.updated_at,
        lines=[
            OrderLine(
                product_id=item.product_id,
                sku=item.sku,
                name=item.name,
                unit_price_cents=item.unit_price_cents,
                quantity=item.quantity,
            )
            for item in items
        ],
    )
