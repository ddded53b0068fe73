"""
Payment Confirmation Handler — 外部決済シグナルの受け口

署名が付いている場合は事前共有シークレットと一致しなければ拒否する。
CONFIRMED のときだけ payment.confirmed を発行する (FAILED では発行しない)。
同じシグナルの再配信は状態を再適用し、イベントも再発行する。
"""

import hmac
import logging

from ...common.errors import AuthenticationFailed
from ...common.events import PAYMENT_CONFIRMED, EventPublisher, PaymentConfirmed
from .aggregate import OrderAggregate, PaymentOutcome
from .commands import OrderStore

logger = logging.getLogger(__name__)


class PaymentConfirmationHandler:
    def __init__(self, store: OrderStore, publisher: EventPublisher, secret: str) -> None:
        self.store = store
        self.publisher = publisher
        self.secret = secret

    def verify(self, signature: str | None) -> None:
        if signature is None:
            return
        if not hmac.compare_digest(signature.encode(), self.secret.encode()):
            logger.warning("Rejected payment signal with invalid signature")
            raise AuthenticationFailed("Invalid signature")

    async def apply(
        self,
        order_id: str,
        outcome: PaymentOutcome,
        signature: str | None = None,
    ) -> OrderAggregate:
        self.verify(signature)
        agg = await self.store.apply_payment_signal(order_id, outcome)

        if outcome is PaymentOutcome.CONFIRMED:
            await self.publisher.publish(
                PAYMENT_CONFIRMED,
                PaymentConfirmed(
                    order_id=agg.id,
                    amount_cents=agg.total_cents,
                    currency=agg.currency,
                    customer_email=agg.customer_email,
                ),
            )
        return agg
