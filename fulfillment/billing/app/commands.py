"""
Billing Service — Invoice Workflow

  1. Order Service から注文スナップショットを取得
  2. 請求書ドキュメントを生成
  3. ブロブストアに {order_id}/{invoice_id}.txt で保存
  4. invoices に INSERT
  5. invoice.generated を発行

冪等キーは持たない。同じ注文に対して呼ぶたびに新しい請求書ができる。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import insert
from sqlalchemy.orm import sessionmaker

from ...common.events import INVOICE_GENERATED, EventPublisher, InvoiceGenerated
from .blob_store import BlobStore
from .clients import OrderClient
from .models import invoices

logger = logging.getLogger(__name__)


def render_invoice(
    invoice_id: str,
    order_id: str,
    customer_email: str,
    total_cents: int,
    currency: str,
    created_at: datetime,
) -> str:
    return "\n".join(
        [
            f"INVOICE {invoice_id}",
            f"Order: {order_id}",
            f"Customer: {customer_email}",
            f"Amount: {total_cents // 100}.{total_cents % 100:02d} {currency}",
            f"Created: {created_at.isoformat()}",
        ]
    )


class InvoiceWorkflow:
    def __init__(
        self,
        session_factory: sessionmaker,
        orders: OrderClient,
        blobs: BlobStore,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.orders = orders
        self.blobs = blobs
        self.publisher = publisher

    async def generate_invoice(self, order_id: str, currency: str | None = None) -> dict:
        payload = await self.orders.get_order(order_id)
        order = payload["order"]

        invoice_id = str(uuid4())
        object_key = f"{order_id}/{invoice_id}.txt"
        currency = (currency or order["currency"]).upper()
        now = datetime.now(timezone.utc)

        document = render_invoice(
            invoice_id, order_id, order["customer_email"], order["total_cents"], currency, now
        )
        await self.blobs.put(object_key, document.encode("utf-8"), "text/plain")

        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    insert(invoices).values(
                        id=invoice_id,
                        order_id=order_id,
                        customer_email=order["customer_email"],
                        total_cents=order["total_cents"],
                        currency=currency,
                        document_key=object_key,
                        created_at=now,
                    )
                )

        document_url = self.blobs.url_for(object_key)
        logger.info("Generated invoice %s for order %s", invoice_id, order_id)

        if self.publisher is not None:
            await self.publisher.publish(
                INVOICE_GENERATED,
                InvoiceGenerated(
                    invoice_id=invoice_id,
                    order_id=order_id,
                    document_url=document_url,
                ),
            )
        else:
            logger.warning("No event publisher configured; invoice.generated not sent for %s", invoice_id)

        return {
            "invoiceId": invoice_id,
            "orderId": order_id,
            "objectKey": object_key,
            "documentUrl": document_url,
        }
