from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, lazyload

from retaildb import columns, errors
from retaildb.apps.catalog import models as catalog_models
from retaildb.apps.catalog import services as catalog_services
from . import lot_policy, models, schemas

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = int(os.getenv("STOCK_LEDGER_MAX_ATTEMPTS", "3"))
RETRY_BACKOFF_MS = int(os.getenv("STOCK_LEDGER_RETRY_BACKOFF_MS", "50"))

_TRANSIENT_DB_MARKERS = (
    "database is locked",
    "deadlock detected",
    "could not serialize",
    "lock timeout",
    "lock wait timeout",
)


class _StaleBalance(Exception):
    """The balance row changed between the locked read and the conditional write."""


@dataclass
class StockMovementOutcome:
    balance: models.StockBalance
    transaction: models.StockTransaction
    lot: Optional[models.StockLot] = None

    @property
    def difference(self) -> Decimal:
        return Decimal(self.transaction.quantity_delta)

    @property
    def adjustment_made(self) -> bool:
        return self.difference != 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Input normalisation
# ---------------------------------------------------------------------------


def _to_decimal(value: Any, *, field: str) -> Decimal:
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise errors.ValidationError(f"{field} must be a number.", code="inventory.invalid_quantity")
    if not number.is_finite():
        raise errors.ValidationError(f"{field} must be a finite number.", code="inventory.invalid_quantity")
    if abs(number) >= columns.MAX_MAGNITUDE:
        raise errors.ValidationError(f"{field} is too large.", code="inventory.invalid_quantity")
    quantized = columns.quantize(number)
    if quantized != number:
        raise errors.ValidationError(
            f"{field} allows at most {columns.DECIMAL_PLACES} decimal places.",
            code="inventory.invalid_quantity",
        )
    return quantized


def _require_positive(value: Any, *, field: str) -> Decimal:
    number = _to_decimal(value, field=field)
    if number <= 0:
        raise errors.ValidationError(f"{field} must be greater than 0.", code="inventory.invalid_quantity")
    return number


def _require_non_negative(value: Any, *, field: str) -> Decimal:
    number = _to_decimal(value, field=field)
    if number < 0:
        raise errors.ValidationError(f"{field} cannot be negative.", code="inventory.invalid_quantity")
    return number


def _normalize_unit(unit: Optional[str]) -> str:
    value = (unit or "").strip()
    if not value:
        raise errors.ValidationError("unit is required.", code="inventory.invalid_unit")
    return value


def _ensure_unit(balance: Optional[models.StockBalance], unit: str) -> None:
    if balance is None:
        return
    if balance.unit.strip().lower() != unit.strip().lower():
        raise errors.ValidationError(
            f"Unit '{unit}' does not match the balance unit '{balance.unit}'.",
            code="inventory.unit_mismatch",
        )


def _resolve_references(
    db: Session,
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
) -> Tuple[catalog_models.Product, catalog_models.Warehouse]:
    product = catalog_services.get_product(db, product_id=product_id, store_id=store_id)
    warehouse = catalog_services.get_warehouse(db, warehouse_id=warehouse_id, store_id=store_id)
    return product, warehouse


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


def _is_transient(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc) or "").lower()
    return any(marker in message for marker in _TRANSIENT_DB_MARKERS)


def _outcome_context(outcome: StockMovementOutcome) -> Dict[str, Any]:
    entry = outcome.transaction
    return {
        "transaction_id": entry.id,
        "quantity_delta": str(entry.quantity_delta),
        "resulting_quantity": str(entry.resulting_quantity),
    }


def _run_in_transaction(
    db: Session,
    *,
    operation: str,
    work: Callable[[], StockMovementOutcome],
    context: Dict[str, Any],
) -> StockMovementOutcome:
    """
    Run `work` and commit it as one unit.

    Ledger errors roll back and propagate unchanged. Integrity races, stale
    balance versions and transient lock failures roll back and retry with a
    linear backoff; once the attempts are used up a ConflictError is raised.
    Only the committed attempt contributes transaction details to the log.
    """
    attempts = max(1, MAX_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            result = work()
            committed = _outcome_context(result)
            db.commit()
        except errors.LedgerError:
            db.rollback()
            raise
        except (_StaleBalance, IntegrityError) as exc:
            db.rollback()
            reason = type(exc).__name__
        except OperationalError as exc:
            db.rollback()
            if not _is_transient(exc):
                raise
            reason = type(exc).__name__
        except Exception:
            db.rollback()
            raise
        else:
            logger.info(
                "Stock ledger mutation committed",
                extra={"operation": operation, "attempt": attempt, **context, **committed},
            )
            return result

        logger.warning(
            "Stock ledger conflict",
            extra={"operation": operation, "attempt": attempt, "reason": reason, **context},
        )
        if attempt < attempts:
            time.sleep(RETRY_BACKOFF_MS * attempt / 1000.0)

    logger.warning(
        "Stock ledger conflict retries exhausted",
        extra={"operation": operation, "attempts": attempts, **context},
    )
    raise errors.ConflictError(
        "The stock balance was updated concurrently; please retry.",
        code="inventory.conflict",
    )


# ---------------------------------------------------------------------------
# Balance persistence
# ---------------------------------------------------------------------------


def _balance_key(*, store_id: int, product_id: int, warehouse_id: int) -> tuple:
    return (
        models.StockBalance.store_id == store_id,
        models.StockBalance.product_id == product_id,
        models.StockBalance.warehouse_id == warehouse_id,
    )


def _lock_balance(
    db: Session,
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
) -> Optional[models.StockBalance]:
    return (
        db.query(models.StockBalance)
        .options(lazyload("*"))
        .filter(*_balance_key(store_id=store_id, product_id=product_id, warehouse_id=warehouse_id))
        .with_for_update(of=models.StockBalance)
        .populate_existing()
        .first()
    )


def _create_balance(
    db: Session,
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
    quantity: Decimal,
    unit: str,
) -> models.StockBalance:
    now = _utcnow()
    balance = models.StockBalance(
        store_id=store_id,
        product_id=product_id,
        warehouse_id=warehouse_id,
        quantity=quantity,
        unit=unit,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(balance)
    # A concurrent first insert on the same key fails here and is retried.
    db.flush()
    return balance


def _increment_balance(db: Session, balance: models.StockBalance, quantity: Decimal) -> Decimal:
    stmt = (
        sa.update(models.StockBalance)
        .where(models.StockBalance.id == balance.id)
        .values(
            quantity=models.StockBalance.quantity + quantity,
            version=models.StockBalance.version + 1,
            updated_at=_utcnow(),
        )
        .returning(models.StockBalance.quantity)
        .execution_options(synchronize_session=False)
    )
    return Decimal(db.execute(stmt).scalar_one())


def _decrement_balance(db: Session, balance: models.StockBalance, quantity: Decimal) -> Decimal:
    stmt = (
        sa.update(models.StockBalance)
        .where(
            models.StockBalance.id == balance.id,
            models.StockBalance.quantity >= quantity,
        )
        .values(
            quantity=models.StockBalance.quantity - quantity,
            version=models.StockBalance.version + 1,
            updated_at=_utcnow(),
        )
        .returning(models.StockBalance.quantity)
        .execution_options(synchronize_session=False)
    )
    remaining = db.execute(stmt).scalar_one_or_none()
    if remaining is None:
        raise errors.InsufficientStockError(available=Decimal(balance.quantity), requested=quantity)
    return Decimal(remaining)


def _set_balance(db: Session, balance: models.StockBalance, quantity: Decimal) -> Decimal:
    stmt = (
        sa.update(models.StockBalance)
        .where(
            models.StockBalance.id == balance.id,
            models.StockBalance.version == balance.version,
        )
        .values(
            quantity=quantity,
            version=models.StockBalance.version + 1,
            updated_at=_utcnow(),
        )
        .returning(models.StockBalance.quantity)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt).scalar_one_or_none()
    if result is None:
        raise _StaleBalance()
    return Decimal(result)


# ---------------------------------------------------------------------------
# Lots and transactions
# ---------------------------------------------------------------------------


def _lock_lot(
    db: Session,
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
    batch_number: str,
) -> Optional[models.StockLot]:
    return (
        db.query(models.StockLot)
        .filter(
            models.StockLot.store_id == store_id,
            models.StockLot.product_id == product_id,
            models.StockLot.warehouse_id == warehouse_id,
            models.StockLot.batch_number == batch_number,
        )
        .with_for_update()
        .populate_existing()
        .first()
    )


def _apply_lot(
    db: Session,
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
    unit: str,
    quantity: Decimal,
    batch_number: Optional[str],
    cost_per_unit: Optional[Decimal],
    expiration_date: Optional[date],
) -> Optional[models.StockLot]:
    batch_number = lot_policy.normalize_batch_number(batch_number)
    existing = None
    if batch_number is not None:
        existing = _lock_lot(
            db,
            store_id=store_id,
            product_id=product_id,
            warehouse_id=warehouse_id,
            batch_number=batch_number,
        )
    snapshot = None
    if existing is not None:
        snapshot = lot_policy.LotSnapshot(
            batch_number=existing.batch_number,
            quantity=Decimal(existing.quantity),
            cost_per_unit=Decimal(existing.cost_per_unit) if existing.cost_per_unit is not None else None,
        )

    decision = lot_policy.decide_lot_action(
        snapshot,
        batch_number=batch_number,
        quantity=quantity,
        cost_per_unit=cost_per_unit,
    )
    now = _utcnow()

    if decision.action == lot_policy.LotAction.NONE:
        return None

    if decision.action == lot_policy.LotAction.MERGE:
        values: Dict[str, Any] = {
            "quantity": models.StockLot.quantity + quantity,
            "cost_per_unit": decision.cost_per_unit,
            "total_cost": decision.total_cost,
            "updated_at": now,
        }
        if expiration_date is not None and existing.expiration_date is None:
            values["expiration_date"] = expiration_date
        db.execute(
            sa.update(models.StockLot)
            .where(models.StockLot.id == existing.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.refresh(existing)
        return existing

    lot = models.StockLot(
        store_id=store_id,
        product_id=product_id,
        warehouse_id=warehouse_id,
        batch_number=decision.batch_number,
        quantity=decision.quantity,
        unit=unit,
        cost_per_unit=decision.cost_per_unit,
        total_cost=decision.total_cost,
        expiration_date=expiration_date,
        received_at=now,
        updated_at=now,
    )
    db.add(lot)
    db.flush()
    return lot


def _record_transaction(
    db: Session,
    *,
    balance: models.StockBalance,
    txn_type: models.StockTransactionTypeEnum,
    delta: Decimal,
    previous: Decimal,
    resulting: Decimal,
    note: Optional[str],
    lot: Optional[models.StockLot] = None,
    batch_number: Optional[str] = None,
    cost_per_unit: Optional[Decimal] = None,
) -> models.StockTransaction:
    entry = models.StockTransaction(
        store_id=balance.store_id,
        product_id=balance.product_id,
        warehouse_id=balance.warehouse_id,
        lot_id=lot.id if lot else None,
        type=txn_type,
        quantity_delta=delta,
        previous_quantity=previous,
        resulting_quantity=resulting,
        unit=balance.unit,
        batch_number=lot.batch_number if lot else lot_policy.normalize_batch_number(batch_number),
        cost_per_unit=cost_per_unit,
        total_cost=lot_policy.transaction_total_cost(cost_per_unit, delta),
        note=note,
        occurred_at=_utcnow(),
    )
    db.add(entry)
    db.flush()
    db.execute(
        sa.update(models.StockBalance)
        .where(models.StockBalance.id == balance.id)
        .values(last_transaction_id=entry.id)
        .execution_options(synchronize_session=False)
    )
    db.refresh(balance)
    return entry


def _key_context(*, store_id: int, product_id: int, warehouse_id: int) -> Dict[str, Any]:
    return {"store_id": store_id, "product_id": product_id, "warehouse_id": warehouse_id}


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def stock_in(
    db: Session,
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
    quantity: Any,
    unit: str,
    note: Optional[str] = None,
    batch_number: Optional[str] = None,
    cost_per_unit: Any = None,
    expiration_date: Optional[date] = None,
) -> StockMovementOutcome:
    """Receive stock into a warehouse, merging into the batch lot when one exists."""
    quantity = _require_positive(quantity, field="quantity")
    unit = _normalize_unit(unit)
    cost = _require_non_negative(cost_per_unit, field="cost_per_unit") if cost_per_unit is not None else None
    context = _key_context(store_id=store_id, product_id=product_id, warehouse_id=warehouse_id)

    def work() -> StockMovementOutcome:
        _resolve_references(db, store_id=store_id, product_id=product_id, warehouse_id=warehouse_id)
        balance = _lock_balance(db, store_id=store_id, product_id=product_id, warehouse_id=warehouse_id)
        _ensure_unit(balance, unit)
        if balance is None:
            balance = _create_balance(
                db,
                store_id=store_id,
                product_id=product_id,
                warehouse_id=warehouse_id,
                quantity=quantity,
                unit=unit,
            )
            resulting = quantity
        else:
            resulting = _increment_balance(db, balance, quantity)

        lot = _apply_lot(
            db,
            store_id=store_id,
            product_id=product_id,
            warehouse_id=warehouse_id,
            unit=balance.unit,
            quantity=quantity,
            batch_number=batch_number,
            cost_per_unit=cost,
            expiration_date=expiration_date,
        )
        entry = _record_transaction(
            db,
            balance=balance,
            txn_type=models.StockTransactionTypeEnum.IN,
            delta=quantity,
            previous=resulting - quantity,
            resulting=resulting,
            note=note or f"Stock in - {quantity} {unit} added",
            lot=lot,
            batch_number=batch_number,
            cost_per_unit=cost,
        )
        return StockMovementOutcome(balance=balance, transaction=entry, lot=lot)

    return _run_in_transaction(db, operation="stock_in", work=work, context=context)


def stock_out(
    db: Session,
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
    quantity: Any,
    unit: str,
    note: Optional[str] = None,
) -> StockMovementOutcome:
    """Issue stock; the sufficiency check and the decrement are one conditional update."""
    quantity = _require_positive(quantity, field="quantity")
    unit = _normalize_unit(unit)
    context = _key_context(store_id=store_id, product_id=product_id, warehouse_id=warehouse_id)

    def work() -> StockMovementOutcome:
        _resolve_references(db, store_id=store_id, product_id=product_id, warehouse_id=warehouse_id)
        balance = _lock_balance(db, store_id=store_id, product_id=product_id, warehouse_id=warehouse_id)
        if balance is None:
            raise errors.InsufficientStockError(available=Decimal("0"), requested=quantity)
        _ensure_unit(balance, unit)
        resulting = _decrement_balance(db, balance, quantity)
        entry = _record_transaction(
            db,
            balance=balance,
            txn_type=models.StockTransactionTypeEnum.OUT,
            delta=-quantity,
            previous=resulting + quantity,
            resulting=resulting,
            note=note or f"Stock out - {quantity} {unit} removed",
        )
        return StockMovementOutcome(balance=balance, transaction=entry)

    return _run_in_transaction(db, operation="stock_out", work=work, context=context)


def stock_take(
    db: Session,
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
    physical_count: Any,
    unit: str,
    note: Optional[str] = None,
) -> StockMovementOutcome:
    """
    Reconcile the balance with a physical count.

    A TAKE transaction is written for every count, including counts that
    match the system quantity, so the audit trail shows each reconciliation.
    """
    physical_count = _require_non_negative(physical_count, field="physical_count")
    unit = _normalize_unit(unit)
    context = _key_context(store_id=store_id, product_id=product_id, warehouse_id=warehouse_id)

    def work() -> StockMovementOutcome:
        _resolve_references(db, store_id=store_id, product_id=product_id, warehouse_id=warehouse_id)
        balance = _lock_balance(db, store_id=store_id, product_id=product_id, warehouse_id=warehouse_id)
        _ensure_unit(balance, unit)
        if balance is None:
            previous = Decimal("0")
            balance = _create_balance(
                db,
                store_id=store_id,
                product_id=product_id,
                warehouse_id=warehouse_id,
                quantity=physical_count,
                unit=unit,
            )
            resulting = physical_count
        else:
            previous = Decimal(balance.quantity)
            resulting = _set_balance(db, balance, physical_count)

        delta = lot_policy.stock_take_delta(previous, physical_count)
        entry = _record_transaction(
            db,
            balance=balance,
            txn_type=models.StockTransactionTypeEnum.TAKE,
            delta=delta,
            previous=previous,
            resulting=resulting,
            note=note
            or f"Stock take adjustment - Physical: {physical_count}, System: {previous}, Difference: {delta}",
        )
        return StockMovementOutcome(balance=balance, transaction=entry)

    return _run_in_transaction(db, operation="stock_take", work=work, context=context)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_balance(
    db: Session,
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
) -> models.StockBalance:
    """
    Current balance for a key, or an unsaved zero-quantity balance in the
    product's unit when nothing has been booked yet.
    """
    product, _ = _resolve_references(db, store_id=store_id, product_id=product_id, warehouse_id=warehouse_id)
    balance = (
        db.query(models.StockBalance)
        .filter(*_balance_key(store_id=store_id, product_id=product_id, warehouse_id=warehouse_id))
        .first()
    )
    if balance is not None:
        return balance
    return models.StockBalance(
        store_id=store_id,
        product_id=product_id,
        warehouse_id=warehouse_id,
        quantity=Decimal("0"),
        unit=product.unit,
        version=0,
        updated_at=None,
    )


def list_balances(
    db: Session,
    *,
    store_id: int,
    warehouse_id: Optional[int] = None,
) -> List[models.StockBalance]:
    query = db.query(models.StockBalance).filter(models.StockBalance.store_id == store_id)
    if warehouse_id is not None:
        catalog_services.get_warehouse(db, warehouse_id=warehouse_id, store_id=store_id)
        query = query.filter(models.StockBalance.warehouse_id == warehouse_id)
    return query.order_by(models.StockBalance.product_id.asc(), models.StockBalance.warehouse_id.asc()).all()


def list_lots(
    db: Session,
    *,
    store_id: int,
    product_id: int,
    warehouse_id: int,
    expiring_within_days: Optional[int] = None,
) -> List[models.StockLot]:
    _resolve_references(db, store_id=store_id, product_id=product_id, warehouse_id=warehouse_id)
    query = db.query(models.StockLot).filter(
        models.StockLot.store_id == store_id,
        models.StockLot.product_id == product_id,
        models.StockLot.warehouse_id == warehouse_id,
    )
    if expiring_within_days is not None:
        cutoff = _utcnow().date() + timedelta(days=expiring_within_days)
        query = query.filter(
            models.StockLot.expiration_date.isnot(None),
            models.StockLot.expiration_date <= cutoff,
        )
    return query.order_by(
        models.StockLot.expiration_date.is_(None),
        models.StockLot.expiration_date.asc(),
        models.StockLot.id.asc(),
    ).all()


def _as_utc(value: datetime) -> datetime:
    """Timestamps are stored in UTC; naive bounds are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _history_query(db: Session, *, store_id: int, filters: schemas.TransactionFilters):
    query = db.query(models.StockTransaction).filter(models.StockTransaction.store_id == store_id)
    if filters.product_id is not None:
        query = query.filter(models.StockTransaction.product_id == filters.product_id)
    if filters.warehouse_id is not None:
        query = query.filter(models.StockTransaction.warehouse_id == filters.warehouse_id)
    if filters.type is not None:
        query = query.filter(models.StockTransaction.type == filters.type)
    if filters.start_date is not None:
        query = query.filter(models.StockTransaction.occurred_at >= _as_utc(filters.start_date))
    if filters.end_date is not None:
        query = query.filter(models.StockTransaction.occurred_at <= _as_utc(filters.end_date))
    return query


def get_transaction_history(
    db: Session,
    *,
    store_id: int,
    filters: schemas.TransactionFilters,
) -> schemas.TransactionPage:
    """
    One page of the store's transactions, newest first.

    Entries sharing a timestamp keep insertion order (id ascending) so
    paging through the history is stable.
    """
    query = _history_query(db, store_id=store_id, filters=filters)
    total = query.order_by(None).count()
    rows = (
        query.order_by(models.StockTransaction.occurred_at.desc(), models.StockTransaction.id.asc())
        .offset((filters.page - 1) * filters.limit)
        .limit(filters.limit)
        .all()
    )
    return schemas.TransactionPage(
        items=[schemas.StockTransactionRead.model_validate(row) for row in rows],
        page=filters.page,
        limit=filters.limit,
        total=total,
        pages=math.ceil(total / filters.limit) if total else 0,
    )


def iter_transaction_history(
    db: Session,
    *,
    store_id: int,
    filters: schemas.TransactionFilters,
) -> Iterator[schemas.StockTransactionRead]:
    """
    Lazily walk the history page by page, starting at `filters.page`.

    Pages are fetched only as the caller consumes them; restart from any
    page by passing a different `filters.page`.
    """
    page = filters.page
    while True:
        result = get_transaction_history(
            db,
            store_id=store_id,
            filters=filters.model_copy(update={"page": page}),
        )
        yield from result.items
        if page >= result.pages:
            return
        page += 1


def get_low_stock_report(
    db: Session,
    *,
    store_id: int,
    warehouse_id: Optional[int] = None,
) -> schemas.LowStockReport:
    query = (
        db.query(models.StockBalance, catalog_models.Product)
        .options(lazyload("*"))
        .join(catalog_models.Product, catalog_models.Product.id == models.StockBalance.product_id)
        .filter(
            models.StockBalance.store_id == store_id,
            models.StockBalance.quantity < catalog_models.Product.min_stock,
        )
    )
    if warehouse_id is not None:
        catalog_services.get_warehouse(db, warehouse_id=warehouse_id, store_id=store_id)
        query = query.filter(models.StockBalance.warehouse_id == warehouse_id)

    items: List[schemas.LowStockItem] = []
    for balance, product in query.order_by(catalog_models.Product.name.asc(), models.StockBalance.warehouse_id.asc()):
        quantity = Decimal(balance.quantity)
        min_stock = Decimal(product.min_stock)
        items.append(
            schemas.LowStockItem(
                balance_id=balance.id,
                product_id=product.id,
                product_code=product.product_code,
                product_name=product.name,
                warehouse_id=balance.warehouse_id,
                quantity=quantity,
                min_stock=min_stock,
                shortfall=min_stock - quantity,
                unit=balance.unit,
            )
        )
    return schemas.LowStockReport(items=items, total=len(items))
