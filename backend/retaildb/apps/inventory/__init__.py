"""
Inventory module.

Stock balances per store, product and warehouse, batch lots, and the
append-only stock transaction log.
"""

from .router import router  # noqa: F401
from . import models  # noqa: F401
