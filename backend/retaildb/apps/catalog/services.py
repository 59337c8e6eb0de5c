from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from retaildb import errors
from . import models


def _normalize_store_code(store_code: str) -> str:
    return (store_code or "").strip()


def get_store_by_code(db: Session, *, store_code: str) -> models.Store:
    store = (
        db.query(models.Store)
        .filter(
            models.Store.store_code == _normalize_store_code(store_code),
            models.Store.is_active.is_(True),
        )
        .first()
    )
    if store is None:
        raise errors.NotFoundError("Store not found.", code="catalog.store_not_found")
    return store


def get_product(db: Session, *, product_id: int, store_id: int) -> models.Product:
    """
    Load a product and make sure it belongs to the requesting store.

    Unknown (or deactivated) products are a NotFoundError; a product owned
    by a different store is a ValidationError.
    """
    product: Optional[models.Product] = db.get(models.Product, product_id)
    if product is None or not product.is_active:
        raise errors.NotFoundError("Product not found.", code="catalog.product_not_found")
    if product.store_id != store_id:
        raise errors.ValidationError(
            "Product does not belong to this store.",
            code="inventory.cross_store_reference",
        )
    return product


def get_warehouse(db: Session, *, warehouse_id: int, store_id: int) -> models.Warehouse:
    warehouse: Optional[models.Warehouse] = db.get(models.Warehouse, warehouse_id)
    if warehouse is None or not warehouse.is_active:
        raise errors.NotFoundError("Warehouse not found.", code="catalog.warehouse_not_found")
    if warehouse.store_id != store_id:
        raise errors.ValidationError(
            "Warehouse does not belong to this store.",
            code="inventory.cross_store_reference",
        )
    return warehouse
