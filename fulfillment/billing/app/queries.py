"""
Billing Service — クエリハンドラ
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import invoices


async def list_invoices(session: AsyncSession, order_id: str) -> list[dict]:
    """指定注文の請求書 (新しい順)"""
    result = await session.execute(
        select(invoices)
        .where(invoices.c.order_id == order_id)
        .order_by(invoices.c.created_at.desc())
    )
    return [
        {
            "id": row.id,
            "order_id": row.order_id,
            "customer_email": row.customer_email,
            "total_cents": row.total_cents,
            "currency": row.currency,
            "document_key": row.document_key,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
