from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
import json
from typing import Mapping
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from expense_tracker import config
from expense_tracker.config import normalize_currency
from expense_tracker.tables import exchange_rates

log = structlog.get_logger(__name__)

WHOLE_UNIT = Decimal("1")
CENTS = Decimal("0.01")

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "ETB": Decimal("57.25"),
    "KES": Decimal("129.00"),
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class RateSnapshot:
    """A full rate table, expressed as units of each currency per 1 ``base``."""

    base: str
    timestamp: datetime
    rates: Mapping[str, Decimal]


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None
    base: str = "USD"

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def fetch_snapshot(self) -> RateSnapshot:
        return RateSnapshot(
            base=normalize_currency(self.base),
            timestamp=datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0),
            rates={normalize_currency(code): _coerce_amount(rate) for code, rate in self.rates.items()},
        )


@dataclass
class OpenExchangeRatesProvider:
    app_id: str | None = None
    base_url: str = config.DEFAULT_RATES_URL
    timeout_seconds: int = 8

    def fetch_snapshot(self) -> RateSnapshot:
        if not self.app_id:
            raise RateProviderUnavailable("OPENEXCHANGERATES_APP_ID is not set")

        url = f"{self.base_url}?app_id={self.app_id}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Open Exchange Rates API unavailable") from exc

        return parse_snapshot(payload)


def parse_snapshot(payload: Mapping) -> RateSnapshot:
    rates = payload.get("rates")
    if not isinstance(rates, dict) or not rates:
        raise RateProviderUnavailable("Rate response missing rates")
    try:
        base = normalize_currency(payload.get("base") or config.BASE_CURRENCY)
        timestamp = datetime.fromtimestamp(int(payload["timestamp"]), tz=timezone.utc).replace(tzinfo=None)
    except (KeyError, TypeError, ValueError) as exc:
        raise RateProviderUnavailable("Rate response has an invalid base or timestamp") from exc

    parsed: dict[str, Decimal] = {}
    for code, value in rates.items():
        try:
            currency = normalize_currency(code)
            rate = _coerce_amount(value)
        except (ValueError, ArithmeticError):
            log.warning("exchange_rate_skipped", currency=code, rate=value)
            continue
        if not rate.is_finite() or rate <= 0:
            log.warning("exchange_rate_skipped", currency=code, rate=value)
            continue
        parsed[currency] = rate
    return RateSnapshot(base=base, timestamp=timestamp, rates=parsed)


def refresh_exchange_rates(engine: Engine, provider) -> bool:
    """Fetch a snapshot and upsert every currency row in one transaction.

    A provider failure leaves the stored table untouched.
    """
    try:
        snapshot = provider.fetch_snapshot()
    except RateProviderUnavailable as exc:
        log.error("exchange_rates_update_failed", error=str(exc))
        return False

    with engine.begin() as conn:
        for code, rate in snapshot.rates.items():
            upsert_rate(conn, code, rate, snapshot.base, snapshot.timestamp)

    log.info(
        "exchange_rates_updated",
        count=len(snapshot.rates),
        base=snapshot.base,
        timestamp=snapshot.timestamp.isoformat(),
    )
    return True


def upsert_rate(conn: Connection, code: str, rate: Decimal, base: str, timestamp: datetime) -> None:
    values = {"rate": rate, "base": base, "timestamp": timestamp}
    dialect = conn.dialect.name
    if dialect in ("postgresql", "sqlite"):
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert_fn(exchange_rates).values(id=code, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=values)
        conn.execute(stmt)
        return

    result = conn.execute(update(exchange_rates).where(exchange_rates.c.id == code).values(**values))
    if result.rowcount == 0:
        conn.execute(exchange_rates.insert().values(id=code, **values))


def get_rate(conn: Connection, currency: str) -> Decimal | None:
    rate = conn.execute(
        select(exchange_rates.c.rate).where(exchange_rates.c.id == normalize_currency(currency))
    ).scalar_one_or_none()
    if rate is None:
        return None
    return _coerce_amount(rate)


def list_rates(conn: Connection) -> list[dict]:
    rows = conn.execute(select(exchange_rates).order_by(exchange_rates.c.id)).mappings().all()
    return [dict(row) for row in rows]


def round_for_currency(amount: Decimal, currency: str) -> Decimal:
    if normalize_currency(currency) == config.WHOLE_UNIT_CURRENCY:
        return amount.quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def convert_amount(
    amount: Decimal | int | float | str,
    source_rate: Decimal,
    target_rate: Decimal,
    target_currency: str,
) -> Decimal:
    """Convert through the base currency and round once for the target."""
    amount_in_base = _coerce_amount(amount) / source_rate
    return round_for_currency(amount_in_base * target_rate, target_currency)


class CurrencyConverter:
    """Converts amounts using the stored rate table.

    ``convert`` returns ``None`` when a rate is missing and suits single
    display values. ``convert_or_identity`` returns the original amount
    instead, so aggregation loops can keep summing.
    """

    def __init__(self, conn: Connection) -> None:
        self._conn = conn
        self._rates: dict[str, Decimal | None] = {}

    def rate(self, currency: str) -> Decimal | None:
        code = normalize_currency(currency)
        if code not in self._rates:
            self._rates[code] = get_rate(self._conn, code)
        return self._rates[code]

    def convert(
        self,
        amount: Decimal | int | float | str,
        source_currency: str,
        target_currency: str,
    ) -> Decimal | None:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        coerced = _coerce_amount(amount)
        if source == target:
            return coerced

        source_rate = self.rate(source)
        target_rate = self.rate(target)
        if not source_rate or not target_rate:
            log.warning(
                "exchange_rate_missing",
                currency=source if not source_rate else target,
            )
            return None
        return convert_amount(coerced, source_rate, target_rate, target)

    def convert_or_identity(
        self,
        amount: Decimal | int | float | str,
        source_currency: str,
        target_currency: str,
    ) -> Decimal:
        converted = self.convert(amount, source_currency, target_currency)
        if converted is None:
            return _coerce_amount(amount)
        return converted


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
