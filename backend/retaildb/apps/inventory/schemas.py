from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from . import models


class StockMovementBase(BaseModel):
    store_code: str = Field(..., min_length=3, max_length=30)
    product_id: int = Field(..., gt=0)
    warehouse_id: int = Field(..., gt=0)
    unit: str = Field(..., min_length=1, max_length=20)
    note: Optional[str] = Field(default=None, max_length=500)


class StockInRequest(StockMovementBase):
    quantity: Decimal = Field(..., gt=0, max_digits=18, decimal_places=4, allow_inf_nan=False)
    batch_number: Optional[str] = Field(default=None, max_length=64)
    cost_per_unit: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=18, decimal_places=4, allow_inf_nan=False
    )
    expiration_date: Optional[date] = None


class StockOutRequest(StockMovementBase):
    quantity: Decimal = Field(..., gt=0, max_digits=18, decimal_places=4, allow_inf_nan=False)


class StockTakeRequest(StockMovementBase):
    physical_count: Decimal = Field(..., ge=0, max_digits=18, decimal_places=4, allow_inf_nan=False)


class StockBalanceRead(BaseModel):
    id: int
    store_id: int
    product_id: int
    warehouse_id: int
    quantity: Decimal
    unit: str
    version: int
    last_transaction_id: Optional[int] = None
    updated_at: datetime

    class Config:
        from_attributes = True


class StockBalanceSummary(BaseModel):
    quantity: Decimal
    unit: str
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StockLotRead(BaseModel):
    id: int
    store_id: int
    product_id: int
    warehouse_id: int
    batch_number: str
    quantity: Decimal
    unit: str
    cost_per_unit: Optional[Decimal] = None
    total_cost: Optional[Decimal] = None
    expiration_date: Optional[date] = None
    received_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StockTransactionRead(BaseModel):
    id: int
    store_id: int
    product_id: int
    warehouse_id: int
    lot_id: Optional[int] = None
    type: models.StockTransactionTypeEnum
    quantity_delta: Decimal
    previous_quantity: Decimal
    resulting_quantity: Decimal
    unit: str
    batch_number: Optional[str] = None
    cost_per_unit: Optional[Decimal] = None
    total_cost: Optional[Decimal] = None
    note: Optional[str] = None
    occurred_at: datetime

    class Config:
        from_attributes = True


class StockMovementResult(BaseModel):
    balance: StockBalanceRead
    transaction: StockTransactionRead
    lot: Optional[StockLotRead] = None


class StockTakeResult(StockMovementResult):
    adjustment_made: bool
    difference: Decimal


class TransactionFilters(BaseModel):
    product_id: Optional[int] = None
    warehouse_id: Optional[int] = None
    type: Optional[models.StockTransactionTypeEnum] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=200)


class TransactionPage(BaseModel):
    items: List[StockTransactionRead]
    page: int
    limit: int
    total: int
    pages: int


class LowStockItem(BaseModel):
    balance_id: int
    product_id: int
    product_code: str
    product_name: str
    warehouse_id: int
    quantity: Decimal
    min_stock: Decimal
    shortfall: Decimal
    unit: str


class LowStockReport(BaseModel):
    items: List[LowStockItem]
    total: int
