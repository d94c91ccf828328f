from __future__ import annotations

import os

DEFAULT_DATABASE_URL = "sqlite:///./expense_tracker.db"
DEFAULT_RATES_URL = "https://openexchangerates.org/api/latest.json"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _env_currency(name: str, fallback: str) -> str:
    raw = os.getenv(name, fallback)
    try:
        return normalize_currency(raw)
    except ValueError:
        return fallback


def _env_bool(name: str, fallback: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return fallback
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, fallback: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return fallback
    try:
        return float(raw)
    except ValueError:
        return fallback


DATABASE_URL = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")

# Fallback when a user has no preferred currency on record.
DEFAULT_CURRENCY = _env_currency("DEFAULT_CURRENCY", "USD")
# Target currency that is displayed in whole units only.
WHOLE_UNIT_CURRENCY = _env_currency("WHOLE_UNIT_CURRENCY", "ETB")
BASE_CURRENCY = "USD"

OPENEXCHANGERATES_APP_ID = os.getenv("OPENEXCHANGERATES_APP_ID")
OPENEXCHANGERATES_API_URL = os.getenv("OPENEXCHANGERATES_API_URL", DEFAULT_RATES_URL)
EXCHANGE_RATE_REFRESH_HOURS = _env_float("EXCHANGE_RATE_REFRESH_HOURS", 4.0)
RATE_REFRESH_ENABLED = _env_bool("RATE_REFRESH_ENABLED", True)

GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = _env_bool("LOG_JSON", False)
