"""Configuration constants for keyswallet, read from the environment."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


DATABASE_URL = os.environ.get("KEYSWALLET_DATABASE_URL", "sqlite:///keyswallet.db")
DEFAULT_CURRENCY = os.environ.get("KEYSWALLET_DEFAULT_CURRENCY", "USD").upper()
TRANSFER_MAX_ATTEMPTS = _env_int("KEYSWALLET_TRANSFER_MAX_ATTEMPTS", 3)
ACCOUNT_LOCK_TIMEOUT = _env_float("KEYSWALLET_LOCK_TIMEOUT", 10.0)
SQLITE_BUSY_TIMEOUT = _env_float("KEYSWALLET_SQLITE_BUSY_TIMEOUT", 30.0)
SESSION_MINUTES = _env_int("KEYSWALLET_SESSION_MINUTES", 60)
TRANSACTIONS_PAGE_SIZE = _env_int("KEYSWALLET_PAGE_SIZE", 20)
_LOG_PATH = os.environ.get("KEYSWALLET_LOG_PATH", "")
LOG_PATH: Optional[Path] = Path(_LOG_PATH) if _LOG_PATH else None

DEFAULT_TRANSFER_CATEGORY = "Transfer"
DEFAULT_DEPOSIT_CATEGORY = "Income"
DEFAULT_BILL_CATEGORY = "Bills & Utilities"
ALLOWANCE_CATEGORY = "Allowance"

__all__ = [
    "DATABASE_URL",
    "DEFAULT_CURRENCY",
    "TRANSFER_MAX_ATTEMPTS",
    "ACCOUNT_LOCK_TIMEOUT",
    "SQLITE_BUSY_TIMEOUT",
    "SESSION_MINUTES",
    "TRANSACTIONS_PAGE_SIZE",
    "LOG_PATH",
    "DEFAULT_TRANSFER_CATEGORY",
    "DEFAULT_DEPOSIT_CATEGORY",
    "DEFAULT_BILL_CATEGORY",
    "ALLOWANCE_CATEGORY",
]
