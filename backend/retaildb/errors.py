"""
Error types shared by the catalog lookups and the stock ledger, plus the
FastAPI handlers that turn them into `{"code", "detail"}` responses.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for errors scoped to a single ledger request."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "inventory.error"

    def __init__(self, detail: str, *, code: Optional[str] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code or self.default_code

    def to_payload(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.detail}


class ValidationError(LedgerError):
    """Malformed quantity, unit mismatch or a cross-store entity reference."""

    default_code = "inventory.validation_error"


class NotFoundError(LedgerError):
    """Unknown store, product or warehouse."""

    status_code = status.HTTP_404_NOT_FOUND
    default_code = "catalog.not_found"


class InsufficientStockError(LedgerError):
    """Raised when a stock-out asks for more than the current balance."""

    default_code = "inventory.insufficient_stock"

    def __init__(self, *, available: Decimal, requested: Decimal) -> None:
        super().__init__(f"Insufficient stock. Available: {available}, Requested: {requested}")
        self.available = available
        self.requested = requested

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["available"] = str(self.available)
        payload["requested"] = str(self.requested)
        return payload


class ConflictError(LedgerError):
    """Concurrent updates kept colliding after every retry attempt."""

    status_code = status.HTTP_409_CONFLICT
    default_code = "inventory.conflict"


async def _ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = {
        "code": "validation_error",
        "detail": "Request validation failed",
        "errors": jsonable_encoder(exc.errors()),
    }
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=payload)


async def _storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(
        "Unhandled storage error",
        exc_info=exc,
        extra={"path": request.url.path, "error_type": type(exc).__name__},
    )
    payload = {"code": "storage.unavailable", "detail": "The stock store is temporarily unavailable."}
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LedgerError, _ledger_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, _storage_error_handler)
