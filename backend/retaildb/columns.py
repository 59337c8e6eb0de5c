"""
Column types shared by the catalog and the stock ledger.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Optional

from sqlalchemy import BigInteger
from sqlalchemy.types import TypeDecorator

DECIMAL_PLACES = 4
QUANTUM = Decimal(1).scaleb(-DECIMAL_PLACES)
# Whole-unit ceiling; keeps scaled values inside a signed 64-bit integer.
MAX_MAGNITUDE = Decimal(10) ** 14

_FACTOR = 10 ** DECIMAL_PLACES


def quantize(value: Any) -> Decimal:
    return Decimal(value).quantize(QUANTUM, rounding=ROUND_HALF_EVEN)


class ScaledDecimal(TypeDecorator):
    """
    Exact fixed-point decimal stored as an integer count of ten-thousandths.

    Python values are Decimals with four places. In SQL the column is a
    BIGINT, so `quantity + :q`, `quantity - :q` and `quantity >= :q` are
    integer operations on every backend, SQLite included. Plain Python
    operands in such expressions are bound through this type as well.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Optional[int]:
        if value is None:
            return None
        return int(quantize(value) * _FACTOR)

    def process_literal_param(self, value: Any, dialect) -> str:
        return "NULL" if value is None else str(self.process_bind_param(value, dialect))

    def process_result_value(self, value: Any, dialect) -> Optional[Decimal]:
        if value is None:
            return None
        return (Decimal(int(value)) / _FACTOR).quantize(QUANTUM)
