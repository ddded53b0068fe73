"""
Inventory Service — テーブル定義

在庫行 (stock) の更新は Stock Ledger だけが行う。
available_qty >= 0 は引き当てロジックがロック下で検証し、CHECK 制約でも保証する。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    func,
)

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("sku", String(64), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("price_cents", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

stock = Table(
    "stock",
    metadata,
    Column("product_id", Integer, ForeignKey("products.id"), primary_key=True),
    Column("available_qty", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("available_qty >= 0", name="ck_stock_available_qty_non_negative"),
)
