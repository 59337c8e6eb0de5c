"""Add catalog and stock ledger tables.

Revision ID: 7d3a9c1e5b20
Revises:
Create Date: 2025-03-02 09:00:00.000000
"""

from __future__ import annotations

from typing import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = "7d3a9c1e5b20"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPES = ("IN", "OUT", "TAKE")


def _table_exists(table_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    return bool(insp.has_table(table_name))


def _index_exists(table_name: str, index_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    if not insp.has_table(table_name):
        return False
    idxs = insp.get_indexes(table_name)
    return any(i.get("name") == index_name for i in idxs)


def _create_index_if_missing(index_name: str, table_name: str, columns: Sequence[str], unique: bool = False) -> None:
    if _table_exists(table_name) and not _index_exists(table_name, index_name):
        op.create_index(index_name, table_name, list(columns), unique=unique)


def _quantity() -> sa.BigInteger:
    # Quantities and amounts are ten-thousandths (retaildb.columns.ScaledDecimal).
    return sa.BigInteger()


def upgrade() -> None:
    # -------------------------
    # catalog
    # -------------------------
    if not _table_exists("stores"):
        op.create_table(
            "stores",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("store_code", sa.String(length=30), nullable=False),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
    _create_index_if_missing("ix_stores_id", "stores", ["id"])
    _create_index_if_missing("ix_stores_store_code", "stores", ["store_code"], unique=True)

    if not _table_exists("products"):
        op.create_table(
            "products",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
            sa.Column("product_code", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("unit", sa.String(length=20), nullable=False, server_default="pcs"),
            sa.Column("min_stock", _quantity(), nullable=False, server_default="0"),
            sa.Column("max_stock", _quantity(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("store_id", "product_code", name="uq_product_code_per_store"),
            sa.CheckConstraint("min_stock >= 0", name="ck_product_min_stock_non_negative"),
        )
    _create_index_if_missing("ix_products_id", "products", ["id"])
    _create_index_if_missing("ix_products_store", "products", ["store_id"])
    _create_index_if_missing("ix_products_product_code", "products", ["product_code"])

    if not _table_exists("warehouses"):
        op.create_table(
            "warehouses",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("address", sa.String(length=255), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
    _create_index_if_missing("ix_warehouses_id", "warehouses", ["id"])
    _create_index_if_missing("ix_warehouses_store", "warehouses", ["store_id"])

    # -------------------------
    # stock_lots
    # -------------------------
    if not _table_exists("stock_lots"):
        op.create_table(
            "stock_lots",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
            sa.Column("warehouse_id", sa.Integer(), sa.ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False),
            sa.Column("batch_number", sa.String(length=64), nullable=False),
            sa.Column("quantity", _quantity(), nullable=False, server_default="0"),
            sa.Column("unit", sa.String(length=20), nullable=False),
            sa.Column("cost_per_unit", _quantity(), nullable=True),
            sa.Column("total_cost", _quantity(), nullable=True),
            sa.Column("expiration_date", sa.Date(), nullable=True),
            sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint(
                "store_id", "product_id", "warehouse_id", "batch_number", name="uq_stock_lot_batch_key"
            ),
            sa.CheckConstraint("quantity >= 0", name="ck_stock_lot_quantity_non_negative"),
        )
    _create_index_if_missing("ix_stock_lots_id", "stock_lots", ["id"])
    for column in ("store_id", "product_id", "warehouse_id", "batch_number"):
        _create_index_if_missing(f"ix_stock_lots_{column}", "stock_lots", [column])
    _create_index_if_missing("ix_stock_lots_expiration", "stock_lots", ["expiration_date"])

    # -------------------------
    # stock_transactions (append-only log)
    # -------------------------
    if not _table_exists("stock_transactions"):
        op.create_table(
            "stock_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
            sa.Column("warehouse_id", sa.Integer(), sa.ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False),
            sa.Column("lot_id", sa.Integer(), sa.ForeignKey("stock_lots.id", ondelete="SET NULL"), nullable=True),
            sa.Column(
                "type",
                sa.Enum(*TRANSACTION_TYPES, name="stock_transaction_type_enum", native_enum=False),
                nullable=False,
            ),
            sa.Column("quantity_delta", _quantity(), nullable=False),
            sa.Column("previous_quantity", _quantity(), nullable=False),
            sa.Column("resulting_quantity", _quantity(), nullable=False),
            sa.Column("unit", sa.String(length=20), nullable=False),
            sa.Column("batch_number", sa.String(length=64), nullable=True),
            sa.Column("cost_per_unit", _quantity(), nullable=True),
            sa.Column("total_cost", _quantity(), nullable=True),
            sa.Column("note", sa.Text(), nullable=True),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        )
    _create_index_if_missing("ix_stock_transactions_id", "stock_transactions", ["id"])
    for column in ("store_id", "product_id", "warehouse_id", "lot_id", "type"):
        _create_index_if_missing(f"ix_stock_transactions_{column}", "stock_transactions", [column])
    _create_index_if_missing("ix_stock_transactions_store_date", "stock_transactions", ["store_id", "occurred_at"])
    _create_index_if_missing(
        "ix_stock_transactions_key", "stock_transactions", ["store_id", "product_id", "warehouse_id"]
    )

    # -------------------------
    # stock_balances
    # -------------------------
    if not _table_exists("stock_balances"):
        op.create_table(
            "stock_balances",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
            sa.Column("warehouse_id", sa.Integer(), sa.ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False),
            sa.Column("quantity", _quantity(), nullable=False, server_default="0"),
            sa.Column("unit", sa.String(length=20), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column(
                "last_transaction_id",
                sa.Integer(),
                sa.ForeignKey("stock_transactions.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("store_id", "product_id", "warehouse_id", name="uq_stock_balance_key"),
            sa.CheckConstraint("quantity >= 0", name="ck_stock_balance_quantity_non_negative"),
        )
    _create_index_if_missing("ix_stock_balances_id", "stock_balances", ["id"])
    for column in ("store_id", "product_id", "warehouse_id"):
        _create_index_if_missing(f"ix_stock_balances_{column}", "stock_balances", [column])
    _create_index_if_missing("ix_stock_balances_store_warehouse", "stock_balances", ["store_id", "warehouse_id"])
    _create_index_if_missing("ix_stock_balances_quantity", "stock_balances", ["quantity"])


def downgrade() -> None:
    for table_name in ("stock_balances", "stock_transactions", "stock_lots", "warehouses", "products", "stores"):
        if _table_exists(table_name):
            op.drop_table(table_name)
