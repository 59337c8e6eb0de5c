"""
Pure business rules for the ledger: lot merge-or-create decisions, cost
averaging and stock-take adjustments. Nothing here touches the database,
so the rules can be tested in isolation from the persistence step.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from retaildb.columns import quantize


class LotAction(str, enum.Enum):
    NONE = "NONE"
    MERGE = "MERGE"
    CREATE = "CREATE"


@dataclass(frozen=True)
class LotSnapshot:
    batch_number: str
    quantity: Decimal
    cost_per_unit: Optional[Decimal] = None


@dataclass(frozen=True)
class LotDecision:
    action: LotAction
    batch_number: Optional[str]
    quantity: Decimal
    cost_per_unit: Optional[Decimal]
    total_cost: Optional[Decimal]


def normalize_batch_number(batch_number: Optional[str]) -> Optional[str]:
    value = (batch_number or "").strip()
    return value or None


def weighted_unit_cost(
    current_quantity: Decimal,
    current_cost: Optional[Decimal],
    added_quantity: Decimal,
    added_cost: Optional[Decimal],
) -> Optional[Decimal]:
    """
    Average cost of a lot after a receipt is merged into it.

    A receipt without a cost keeps the lot's cost; a lot without a cost
    takes the receipt's cost. The average is rounded half-even to the
    four places the ledger stores.
    """
    if added_cost is None:
        return current_cost
    if current_cost is None:
        return added_cost
    total_quantity = current_quantity + added_quantity
    if total_quantity <= 0:
        return added_cost
    return quantize((current_cost * current_quantity + added_cost * added_quantity) / total_quantity)


def decide_lot_action(
    existing: Optional[LotSnapshot],
    *,
    batch_number: Optional[str],
    quantity: Decimal,
    cost_per_unit: Optional[Decimal],
) -> LotDecision:
    """
    Decide what a stock-in does to batch lots.

    - No batch number: the receipt is not lot-tracked.
    - A lot already exists for the batch key: merge into it.
    - Otherwise: open a new lot.
    """
    batch_number = normalize_batch_number(batch_number)
    if batch_number is None:
        return LotDecision(
            action=LotAction.NONE,
            batch_number=None,
            quantity=quantity,
            cost_per_unit=cost_per_unit,
            total_cost=None,
        )

    if existing is not None:
        if existing.batch_number != batch_number:
            raise ValueError("Lot snapshot does not match the requested batch number.")
        new_quantity = existing.quantity + quantity
        new_cost = weighted_unit_cost(existing.quantity, existing.cost_per_unit, quantity, cost_per_unit)
        return LotDecision(
            action=LotAction.MERGE,
            batch_number=batch_number,
            quantity=new_quantity,
            cost_per_unit=new_cost,
            total_cost=quantize(new_cost * new_quantity) if new_cost is not None else None,
        )

    return LotDecision(
        action=LotAction.CREATE,
        batch_number=batch_number,
        quantity=quantity,
        cost_per_unit=cost_per_unit,
        total_cost=quantize(cost_per_unit * quantity) if cost_per_unit is not None else None,
    )


def stock_take_delta(current_quantity: Decimal, physical_count: Decimal) -> Decimal:
    return physical_count - current_quantity


def transaction_total_cost(cost_per_unit: Optional[Decimal], quantity_delta: Decimal) -> Optional[Decimal]:
    if cost_per_unit is None:
        return None
    return quantize(cost_per_unit * abs(quantity_delta))
