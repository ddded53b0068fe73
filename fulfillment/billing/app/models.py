"""
Billing Service — テーブル定義

invoices は追記のみ。order_id に一意制約は付けない
(同じ注文への再試行で複数の請求書ができることを許容する)。
"""

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table

metadata = MetaData()

invoices = Table(
    "invoices",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), nullable=False, index=True),
    Column("customer_email", String(320), nullable=False),
    Column("total_cents", Integer, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("document_key", String(255), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
