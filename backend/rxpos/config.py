# backend/rxpos/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Storage collaborator: products, batches, invoices, loyalty, consignment, delivery
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///rxpos.sqlite3",
    )
    # Local durable store for offline transactions (must survive restarts and network loss)
    SQLALCHEMY_BINDS = {
        "offline": os.environ.get("OFFLINE_DATABASE_URL", "sqlite:///rxpos_offline.sqlite3"),
    }
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Point-of-sale identity; part of every invoice number so terminals never collide offline
    TERMINAL_CODE = os.environ.get("RXPOS_TERMINAL_CODE", "T01")
    LOCAL_CURRENCY = os.environ.get("RXPOS_LOCAL_CURRENCY", "VES")
    ENFORCE_PRESCRIPTIONS = _env_bool("RXPOS_ENFORCE_PRESCRIPTIONS", True)

    # Remote sync endpoint (unset = sync disabled, transactions stay pending)
    SYNC_ENDPOINT_URL = os.environ.get("RXPOS_SYNC_ENDPOINT_URL")
    SYNC_API_KEY = os.environ.get("RXPOS_SYNC_API_KEY")
    SYNC_TIMEOUT_SECONDS = float(os.environ.get("RXPOS_SYNC_TIMEOUT_SECONDS", "10"))
    SYNC_MAX_WORKERS = int(os.environ.get("RXPOS_SYNC_MAX_WORKERS", "4"))
    SYNC_BATCH_SIZE = int(os.environ.get("RXPOS_SYNC_BATCH_SIZE", "100"))
    SYNC_MANUAL_REVIEW_THRESHOLD = int(os.environ.get("RXPOS_SYNC_MANUAL_REVIEW_THRESHOLD", "10"))
    SYNC_BACKOFF_BASE_SECONDS = float(os.environ.get("RXPOS_SYNC_BACKOFF_BASE_SECONDS", "30"))
    SYNC_BACKOFF_MAX_SECONDS = float(os.environ.get("RXPOS_SYNC_BACKOFF_MAX_SECONDS", "3600"))
    SYNC_INTERVAL_SECONDS = float(os.environ.get("RXPOS_SYNC_INTERVAL_SECONDS", "60"))

    DELIVERY_ON_TIME_TOLERANCE_MINUTES = 15
    DELIVERY_DEFAULT_COMMISSION_PERCENT = 10
    CONSIGNMENT_DUE_SOON_DAYS = 7
    EXPIRY_WARNING_DAYS = 90

    # Browser POS front-ends allowed to call the API
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get(
            "RXPOS_CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if o.strip()
    )
