"""
Notification Service — 通知ハンドラ

通知プロバイダは外部の関心事のため、ここではモック (ログ出力) とする。
"""

import logging

from ...common.events import (
    INVOICE_GENERATED,
    PAYMENT_CONFIRMED,
    Event,
    InvoiceGenerated,
    PaymentConfirmed,
)

logger = logging.getLogger(__name__)


class Notifier:
    """ルーティングキーごとの通知を組み立てて送る。"""

    def notify(self, routing_key: str, event: Event) -> str | None:
        handler = {
            PAYMENT_CONFIRMED: self._payment_confirmed,
            INVOICE_GENERATED: self._invoice_generated,
        }.get(routing_key)
        if handler is None:
            logger.debug("No notification for %s", routing_key)
            return None
        message = handler(event)
        self.send(message)
        return message

    def send(self, message: str) -> None:
        logger.info("(mock) Email/SMS: %s", message)

    @staticmethod
    def _payment_confirmed(event: PaymentConfirmed) -> str:
        return (
            f"Payment confirmed for order {event.order_id} to {event.customer_email} "
            f"(amount_cents={event.amount_cents} {event.currency})"
        )

    @staticmethod
    def _invoice_generated(event: InvoiceGenerated) -> str:
        return f"Invoice generated for order {event.order_id} documentUrl={event.document_url}"
