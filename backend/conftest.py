from __future__ import annotations

import os
import sys
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["STOCK_LEDGER_RETRY_BACKOFF_MS"] = "5"

from retaildb.database import Base  # noqa: E402
from retaildb.apps.catalog import models as catalog_models  # noqa: E402
from retaildb.apps.inventory import models as inventory_models  # noqa: F401, E402


@pytest.fixture()
def db_engine():
    # StaticPool keeps one connection so TestClient worker threads see the same in-memory database.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def db_session(db_engine):
    TestingSession = sessionmaker(
        bind=db_engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


def seed_catalog(db) -> SimpleNamespace:
    """
    Two stores: the main one with two products and two warehouses, and a
    second store whose product and warehouse must never be reachable from
    the first.
    """
    store = catalog_models.Store(store_code="STORE-001", name="Main Street")
    other_store = catalog_models.Store(store_code="STORE-002", name="Harbour Road")
    db.add_all([store, other_store])
    db.flush()

    product = catalog_models.Product(
        store_id=store.id,
        product_code="MILK-1L",
        name="Milk 1L",
        unit="pcs",
        min_stock=Decimal("5"),
    )
    second_product = catalog_models.Product(
        store_id=store.id,
        product_code="FLOUR-25",
        name="Flour 25kg",
        unit="kg",
        min_stock=Decimal("0"),
    )
    warehouse = catalog_models.Warehouse(store_id=store.id, name="Back room")
    second_warehouse = catalog_models.Warehouse(store_id=store.id, name="Cold store")
    foreign_product = catalog_models.Product(
        store_id=other_store.id,
        product_code="MILK-1L",
        name="Milk 1L",
        unit="pcs",
    )
    foreign_warehouse = catalog_models.Warehouse(store_id=other_store.id, name="Harbour back room")
    db.add_all([product, second_product, warehouse, second_warehouse, foreign_product, foreign_warehouse])
    db.commit()

    return SimpleNamespace(
        store=store,
        other_store=other_store,
        product=product,
        second_product=second_product,
        warehouse=warehouse,
        second_warehouse=second_warehouse,
        foreign_product=foreign_product,
        foreign_warehouse=foreign_warehouse,
    )


@pytest.fixture()
def catalog(db_session) -> SimpleNamespace:
    return seed_catalog(db_session)
