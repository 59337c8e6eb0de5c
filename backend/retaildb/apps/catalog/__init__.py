"""
Catalog module.

Stores, products and warehouses referenced by the stock ledger. Product
and warehouse CRUD lives elsewhere; this app only owns the tables and the
store-scoped lookups the ledger validates against.
"""

from . import models  # noqa: F401
