# backend/retaildb/__init__.py
"""
Import ORM models from each app so that:

- Alembic and Base.metadata.create_all() see all tables.
- The package exposes a clear surface.

The actual model classes are kept in retaildb/apps/*/models.py.
"""

from .apps.catalog import models as catalog_models            # stores / products / warehouses
from .apps.inventory import models as inventory_models        # balances, lots, transaction log

__all__ = [
    "catalog_models",
    "inventory_models",
]
