from __future__ import annotations

from decimal import Decimal

from sqlalchemy import Column, Integer, MetaData, Table, create_engine, select

from retaildb.columns import QUANTUM, ScaledDecimal, quantize


def _table():
    metadata = MetaData()
    table = Table("amounts", metadata, Column("id", Integer, primary_key=True), Column("amount", ScaledDecimal()))
    return metadata, table


def test_quantize_rounds_half_even():
    assert quantize("1.00005") == Decimal("1.0000")
    assert quantize("1.00015") == Decimal("1.0002")
    assert quantize(3) == Decimal("3.0000")


def test_values_are_stored_as_ten_thousandths():
    column_type = ScaledDecimal()

    assert column_type.process_bind_param(Decimal("0.3"), None) == 3000
    assert column_type.process_bind_param(Decimal("-2.5"), None) == -25000
    assert column_type.process_bind_param(None, None) is None
    assert column_type.process_result_value(3000, None) == Decimal("0.3")
    assert column_type.process_result_value(3000, None).as_tuple().exponent == QUANTUM.as_tuple().exponent
    assert column_type.process_result_value(None, None) is None


def test_sql_arithmetic_is_exact():
    metadata, table = _table()
    engine = create_engine("sqlite+pysqlite:///:memory:")
    metadata.create_all(engine)
    try:
        with engine.begin() as conn:
            conn.execute(table.insert().values(id=1, amount=Decimal("0.3")))
            conn.execute(table.update().values(amount=table.c.amount - Decimal("0.1")))
            conn.execute(table.update().values(amount=table.c.amount - Decimal("0.2")))

            assert conn.execute(select(table.c.amount)).scalar_one() == Decimal("0")
            assert conn.execute(select(table.c.id).where(table.c.amount >= Decimal("0"))).scalar_one() == 1
            assert conn.execute(select(table.c.id).where(table.c.amount >= Decimal("0.0001"))).first() is None
    finally:
        engine.dispose()
