# backend/retaildb/main.py
import os
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .errors import register_exception_handlers
from .apps.inventory.router import router as inventory_router


# Back-office UI dev servers.
DEV_ORIGINS = [
    "http://127.0.0.1:5173",
    "http://localhost:5173",
    "http://localhost:4173",
]


def _allowed_origins() -> List[str]:
    """Comma-separated CORS_ALLOWED_ORIGINS, or the dev servers when unset or empty."""
    raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or list(DEV_ORIGINS)


app = FastAPI(title="Retail Stock Ledger API", version="1.0.0")
cors_origins = _allowed_origins()
allow_credentials = "*" not in cors_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


@app.get("/", tags=["health"])
def read_root():
    return {"status": "ok", "message": "Retail stock ledger is running"}


@app.get("/health", tags=["health"])
def health():
    return {"status": "ok"}


app.include_router(inventory_router)
