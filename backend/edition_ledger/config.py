# backend/edition_ledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/editions.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///editions.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Certificate pages are served by the storefront, not by this service
    CERTIFICATE_BASE_URL = os.environ.get("CERTIFICATE_BASE_URL", "http://localhost:3000")

    # Shared secret for ingestion jobs and operator tooling; unset = open (dev only)
    LEDGER_API_TOKEN = os.environ.get("LEDGER_API_TOKEN")

    # Resequencing pass controls
    LEDGER_MAX_PASS_ATTEMPTS = int(os.environ.get("LEDGER_MAX_PASS_ATTEMPTS", "3"))
    LEDGER_RETRY_BACKOFF_SECONDS = float(os.environ.get("LEDGER_RETRY_BACKOFF_SECONDS", "0.1"))
    LEDGER_LOCK_TIMEOUT_SECONDS = float(os.environ.get("LEDGER_LOCK_TIMEOUT_SECONDS", "5.0"))
    LEDGER_LOCK_LEASE_SECONDS = int(os.environ.get("LEDGER_LOCK_LEASE_SECONDS", "60"))
