from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from retaildb.database import get_db, get_read_db
from retaildb.apps.catalog import services as catalog_services

from . import models, schemas, services

router = APIRouter(
    prefix="/inventory",
    tags=["inventory"],
)


def _movement_result(outcome: services.StockMovementOutcome) -> schemas.StockMovementResult:
    return schemas.StockMovementResult(
        balance=schemas.StockBalanceRead.model_validate(outcome.balance),
        transaction=schemas.StockTransactionRead.model_validate(outcome.transaction),
        lot=schemas.StockLotRead.model_validate(outcome.lot) if outcome.lot else None,
    )


@router.post(
    "/stock-in",
    response_model=schemas.StockMovementResult,
    status_code=status.HTTP_201_CREATED,
)
def stock_in(
    payload: schemas.StockInRequest,
    db: Session = Depends(get_db),
):
    store = catalog_services.get_store_by_code(db, store_code=payload.store_code)
    outcome = services.stock_in(
        db,
        store_id=store.id,
        product_id=payload.product_id,
        warehouse_id=payload.warehouse_id,
        quantity=payload.quantity,
        unit=payload.unit,
        note=payload.note,
        batch_number=payload.batch_number,
        cost_per_unit=payload.cost_per_unit,
        expiration_date=payload.expiration_date,
    )
    return _movement_result(outcome)


@router.post(
    "/stock-out",
    response_model=schemas.StockMovementResult,
    status_code=status.HTTP_201_CREATED,
)
def stock_out(
    payload: schemas.StockOutRequest,
    db: Session = Depends(get_db),
):
    store = catalog_services.get_store_by_code(db, store_code=payload.store_code)
    outcome = services.stock_out(
        db,
        store_id=store.id,
        product_id=payload.product_id,
        warehouse_id=payload.warehouse_id,
        quantity=payload.quantity,
        unit=payload.unit,
        note=payload.note,
    )
    return _movement_result(outcome)


@router.post(
    "/stock-take",
    response_model=schemas.StockTakeResult,
    status_code=status.HTTP_201_CREATED,
)
def stock_take(
    payload: schemas.StockTakeRequest,
    db: Session = Depends(get_db),
):
    store = catalog_services.get_store_by_code(db, store_code=payload.store_code)
    outcome = services.stock_take(
        db,
        store_id=store.id,
        product_id=payload.product_id,
        warehouse_id=payload.warehouse_id,
        physical_count=payload.physical_count,
        unit=payload.unit,
        note=payload.note,
    )
    result = _movement_result(outcome)
    return schemas.StockTakeResult(
        balance=result.balance,
        transaction=result.transaction,
        adjustment_made=outcome.adjustment_made,
        difference=outcome.difference,
    )


@router.get(
    "/balance/{store_code}/{product_id}/{warehouse_id}",
    response_model=schemas.StockBalanceSummary,
)
def get_balance(
    store_code: str,
    product_id: int,
    warehouse_id: int,
    db: Session = Depends(get_read_db),
):
    store = catalog_services.get_store_by_code(db, store_code=store_code)
    return services.get_balance(db, store_id=store.id, product_id=product_id, warehouse_id=warehouse_id)


@router.get(
    "/balances/{store_code}",
    response_model=List[schemas.StockBalanceRead],
)
def list_balances(
    store_code: str,
    warehouse_id: Optional[int] = None,
    db: Session = Depends(get_read_db),
):
    store = catalog_services.get_store_by_code(db, store_code=store_code)
    return services.list_balances(db, store_id=store.id, warehouse_id=warehouse_id)


@router.get(
    "/lots/{store_code}/{product_id}/{warehouse_id}",
    response_model=List[schemas.StockLotRead],
)
def list_lots(
    store_code: str,
    product_id: int,
    warehouse_id: int,
    expiring_within_days: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_read_db),
):
    store = catalog_services.get_store_by_code(db, store_code=store_code)
    return services.list_lots(
        db,
        store_id=store.id,
        product_id=product_id,
        warehouse_id=warehouse_id,
        expiring_within_days=expiring_within_days,
    )


@router.get(
    "/transactions/{store_code}",
    response_model=schemas.TransactionPage,
)
def get_transaction_history(
    store_code: str,
    product_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    type: Optional[models.StockTransactionTypeEnum] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_read_db),
):
    store = catalog_services.get_store_by_code(db, store_code=store_code)
    filters = schemas.TransactionFilters(
        product_id=product_id,
        warehouse_id=warehouse_id,
        type=type,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return services.get_transaction_history(db, store_id=store.id, filters=filters)


@router.get(
    "/low-stock/{store_code}",
    response_model=schemas.LowStockReport,
)
def get_low_stock_report(
    store_code: str,
    warehouse_id: Optional[int] = None,
    db: Session = Depends(get_read_db),
):
    store = catalog_services.get_store_by_code(db, store_code=store_code)
    return services.get_low_stock_report(db, store_id=store.id, warehouse_id=warehouse_id)
