from __future__ import annotations

from decimal import Decimal

import pytest

from retaildb.apps.inventory import lot_policy


def test_receipt_without_batch_is_not_lot_tracked():
    decision = lot_policy.decide_lot_action(None, batch_number="   ", quantity=Decimal("4"), cost_per_unit=None)

    assert decision.action == lot_policy.LotAction.NONE
    assert decision.batch_number is None
    assert decision.total_cost is None


def test_new_batch_opens_lot_with_total_cost():
    decision = lot_policy.decide_lot_action(
        None,
        batch_number=" B1 ",
        quantity=Decimal("10"),
        cost_per_unit=Decimal("2.50"),
    )

    assert decision.action == lot_policy.LotAction.CREATE
    assert decision.batch_number == "B1"
    assert decision.quantity == Decimal("10")
    assert decision.total_cost == Decimal("25.00")


def test_existing_batch_merges_and_averages_cost():
    existing = lot_policy.LotSnapshot(batch_number="B1", quantity=Decimal("10"), cost_per_unit=Decimal("2"))

    decision = lot_policy.decide_lot_action(
        existing,
        batch_number="B1",
        quantity=Decimal("30"),
        cost_per_unit=Decimal("4"),
    )

    assert decision.action == lot_policy.LotAction.MERGE
    assert decision.quantity == Decimal("40")
    assert decision.cost_per_unit == Decimal("3.5")
    assert decision.total_cost == Decimal("140")


def test_merge_without_cost_keeps_lot_cost():
    existing = lot_policy.LotSnapshot(batch_number="B1", quantity=Decimal("5"), cost_per_unit=Decimal("1.20"))

    decision = lot_policy.decide_lot_action(existing, batch_number="B1", quantity=Decimal("5"), cost_per_unit=None)

    assert decision.cost_per_unit == Decimal("1.20")
    assert decision.total_cost == Decimal("12.00")


def test_merge_into_uncosted_lot_takes_receipt_cost():
    assert lot_policy.weighted_unit_cost(Decimal("5"), None, Decimal("5"), Decimal("3")) == Decimal("3")


def test_snapshot_for_another_batch_is_rejected():
    existing = lot_policy.LotSnapshot(batch_number="B2", quantity=Decimal("1"))

    with pytest.raises(ValueError):
        lot_policy.decide_lot_action(existing, batch_number="B1", quantity=Decimal("1"), cost_per_unit=None)


@pytest.mark.parametrize(
    "current, physical, expected",
    [
        (Decimal("12"), Decimal("20"), Decimal("8")),
        (Decimal("12"), Decimal("4"), Decimal("-8")),
        (Decimal("7"), Decimal("7"), Decimal("0")),
    ],
)
def test_stock_take_delta(current, physical, expected):
    assert lot_policy.stock_take_delta(current, physical) == expected


def test_transaction_total_cost_uses_absolute_delta():
    assert lot_policy.transaction_total_cost(Decimal("2"), Decimal("-3")) == Decimal("6")
    assert lot_policy.transaction_total_cost(None, Decimal("3")) is None


def test_average_cost_is_rounded_to_stored_places():
    existing = lot_policy.LotSnapshot(batch_number="B1", quantity=Decimal("1"), cost_per_unit=Decimal("1"))

    decision = lot_policy.decide_lot_action(
        existing, batch_number="B1", quantity=Decimal("2"), cost_per_unit=Decimal("2")
    )

    assert decision.cost_per_unit == Decimal("1.6667")
    assert decision.total_cost == Decimal("5.0001")
