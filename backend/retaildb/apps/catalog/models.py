from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from retaildb.columns import ScaledDecimal
from retaildb.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Store(Base):
    __tablename__ = "stores"

    id = Column(Integer, primary_key=True, index=True)
    store_code = Column(String(30), nullable=False, unique=True, index=True)
    name = Column(String(128), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    products = relationship("Product", back_populates="store")
    warehouses = relationship("Warehouse", back_populates="store")


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("store_id", "product_code", name="uq_product_code_per_store"),
        CheckConstraint("min_stock >= 0", name="ck_product_min_stock_non_negative"),
        Index("ix_products_store", "store_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    product_code = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    unit = Column(String(20), nullable=False, default="pcs")
    min_stock = Column(ScaledDecimal(), nullable=False, default=0)
    max_stock = Column(ScaledDecimal(), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    store = relationship("Store", back_populates="products", lazy="joined")


class Warehouse(Base):
    __tablename__ = "warehouses"
    __table_args__ = (Index("ix_warehouses_store", "store_id"),)

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(128), nullable=False)
    address = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    store = relationship("Store", back_populates="warehouses", lazy="joined")
