"""
Order Service — 注文集約 (Order Aggregate)

注文と明細をひとまとまりとして扱い、金額計算と状態遷移を持つ。

状態遷移:
    CREATED → PAID       (支払い確認 CONFIRMED)
    CREATED → CANCELLED  (支払い失敗 FAILED)

PAID / CANCELLED は終端。ただし支払いシグナルは現在の状態を確認せずに
対象の状態を上書きする (再配信されたシグナルは同じ状態を再適用する)。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class PaymentOutcome(str, Enum):
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


_STATUS_FOR_OUTCOME = {
    PaymentOutcome.CONFIRMED: OrderStatus.PAID,
    PaymentOutcome.FAILED: OrderStatus.CANCELLED,
}


@dataclass(frozen=True)
class OrderLine:
    product_id: int
    sku: str
    name: str
    unit_price_cents: int
    quantity: int

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "sku": self.sku,
            "name": self.name,
            "unit_price_cents": self.unit_price_cents,
            "quantity": self.quantity,
            "line_total_cents": self.line_total_cents,
        }


@dataclass
class OrderAggregate:
    id: str
    customer_email: str
    currency: str
    lines: list[OrderLine] = field(default_factory=list)
    status: OrderStatus = OrderStatus.CREATED
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def total_cents(self) -> int:
        """明細合計。呼び出し元から渡された合計は信用しない。"""
        return sum(line.line_total_cents for line in self.lines)

    def apply_payment_signal(self, outcome: PaymentOutcome) -> OrderStatus:
        """支払いシグナルを適用する (現在の状態は確認しない)。"""
        self.status = _STATUS_FOR_OUTCOME[outcome]
        return self.status

    def summary(self) -> dict:
        return {
            "orderId": self.id,
            "status": self.status.value,
            "total_cents": self.total_cents,
            "currency": self.currency,
        }
