from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship

from retaildb.columns import ScaledDecimal
from retaildb.database import Base
from retaildb.apps.catalog import models as catalog_models  # noqa: F401  (Product / Warehouse mappers)


# Four-place decimals stored as exact scaled integers.
QUANTITY = ScaledDecimal()
MONEY = ScaledDecimal()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StockTransactionTypeEnum(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"
    TAKE = "TAKE"


class StockBalance(Base):
    __tablename__ = "stock_balances"
    __table_args__ = (
        UniqueConstraint("store_id", "product_id", "warehouse_id", name="uq_stock_balance_key"),
        CheckConstraint("quantity >= 0", name="ck_stock_balance_quantity_non_negative"),
        Index("ix_stock_balances_store_warehouse", "store_id", "warehouse_id"),
        Index("ix_stock_balances_quantity", "quantity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False, index=True)

    quantity = Column(QUANTITY, nullable=False, default=0)
    unit = Column(String(20), nullable=False)
    # Bumped by every mutation; stock-take uses it as an optimistic lock.
    version = Column(Integer, nullable=False, default=1)
    last_transaction_id = Column(
        Integer,
        ForeignKey("stock_transactions.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    product = relationship("Product", lazy="joined")
    warehouse = relationship("Warehouse", lazy="joined")


class StockLot(Base):
    __tablename__ = "stock_lots"
    __table_args__ = (
        UniqueConstraint("store_id", "product_id", "warehouse_id", "batch_number", name="uq_stock_lot_batch_key"),
        CheckConstraint("quantity >= 0", name="ck_stock_lot_quantity_non_negative"),
        Index("ix_stock_lots_expiration", "expiration_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False, index=True)
    batch_number = Column(String(64), nullable=False, index=True)

    # Cumulative quantity received into this lot.
    quantity = Column(QUANTITY, nullable=False, default=0)
    unit = Column(String(20), nullable=False)
    cost_per_unit = Column(MONEY, nullable=True)
    total_cost = Column(MONEY, nullable=True)
    expiration_date = Column(Date, nullable=True)

    received_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class StockTransaction(Base):
    __tablename__ = "stock_transactions"
    __table_args__ = (
        Index("ix_stock_transactions_store_date", "store_id", "occurred_at"),
        Index("ix_stock_transactions_key", "store_id", "product_id", "warehouse_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False, index=True)
    lot_id = Column(Integer, ForeignKey("stock_lots.id", ondelete="SET NULL"), nullable=True, index=True)

    type = Column(
        SAEnum(StockTransactionTypeEnum, name="stock_transaction_type_enum", native_enum=False),
        nullable=False,
        index=True,
    )
    quantity_delta = Column(QUANTITY, nullable=False)
    previous_quantity = Column(QUANTITY, nullable=False)
    resulting_quantity = Column(QUANTITY, nullable=False)
    unit = Column(String(20), nullable=False)

    batch_number = Column(String(64), nullable=True)
    cost_per_unit = Column(MONEY, nullable=True)
    total_cost = Column(MONEY, nullable=True)
    note = Column(Text, nullable=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    product = relationship("Product", lazy="joined")
    warehouse = relationship("Warehouse", lazy="joined")
    lot = relationship("StockLot", lazy="joined")


class ImmutableTransactionError(RuntimeError):
    """Raised when code tries to rewrite or remove a committed stock transaction."""


@event.listens_for(StockTransaction, "before_update")
def _block_transaction_update(mapper, connection, target):
    raise ImmutableTransactionError(f"Stock transaction {target.id} is append-only and cannot be updated.")


@event.listens_for(StockTransaction, "before_delete")
def _block_transaction_delete(mapper, connection, target):
    raise ImmutableTransactionError(f"Stock transaction {target.id} is append-only and cannot be deleted.")
