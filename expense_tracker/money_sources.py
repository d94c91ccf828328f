"""Money source ledger.

Every function expects to run inside the caller's ``engine.begin()`` block so
that a balance change, its history row and any related expense change commit
or roll back together. Balance writes are single ``balance = balance + delta``
statements; there is no read-modify-write in Python, so concurrent writers to
one source serialize on the database row lock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.engine import Connection

from expense_tracker.config import normalize_currency
from expense_tracker.currency_conversion import CurrencyConverter
from expense_tracker.errors import NotFoundError
from expense_tracker.pagination import paginate
from expense_tracker.settings_store import get_preferred_currency
from expense_tracker.tables import balance_history, expenses, money_sources

log = structlog.get_logger(__name__)

ZERO = Decimal("0")

MONEY_SOURCE_COLUMNS = (
    money_sources.c.id,
    money_sources.c.user_id,
    money_sources.c.name,
    money_sources.c.currency,
    money_sources.c.balance,
    money_sources.c.budget,
    money_sources.c.icon,
    money_sources.c.is_default,
    money_sources.c.created_at,
    money_sources.c.updated_at,
)
SORTABLE_FIELDS = {
    "name": money_sources.c.name,
    "balance": money_sources.c.balance,
    "budget": money_sources.c.budget,
    "created_at": money_sources.c.created_at,
    "updated_at": money_sources.c.updated_at,
}
PATCHABLE_FIELDS = {"name", "currency", "balance", "budget", "icon", "is_default"}


@dataclass(frozen=True)
class AddFundsResult:
    balance: Decimal
    reminder_for_budget: bool


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def lock_money_source(conn: Connection, user_id: int, source_id: int) -> dict:
    row = conn.execute(
        select(*MONEY_SOURCE_COLUMNS)
        .where(money_sources.c.id == source_id, money_sources.c.user_id == user_id)
        .with_for_update()
    ).mappings().first()
    if not row:
        log.warning("money_source_not_found", money_source_id=source_id, user_id=user_id)
        raise NotFoundError(f"Money source with ID {source_id} not found.")
    return dict(row)


def adjust_balance(conn: Connection, source_id: int, delta: Decimal) -> Decimal:
    """Apply a signed delta to a source balance and return the new balance."""
    new_balance = conn.execute(
        update(money_sources)
        .where(money_sources.c.id == source_id)
        .values(balance=money_sources.c.balance + delta, updated_at=func.now())
        .returning(money_sources.c.balance)
    ).scalar_one_or_none()
    if new_balance is None:
        raise NotFoundError(f"Money source with ID {source_id} not found.")
    return new_balance


def append_history(
    conn: Connection,
    user_id: int,
    source_id: int,
    balance: Decimal,
    amount: Decimal,
    currency: str,
    when: datetime | None = None,
) -> None:
    conn.execute(
        insert(balance_history).values(
            user_id=user_id,
            money_source_id=source_id,
            date=when or utcnow(),
            balance=balance,
            amount=amount,
            currency=currency,
        )
    )


def clear_default(conn: Connection, user_id: int, exclude_id: int | None = None) -> None:
    stmt = (
        update(money_sources)
        .where(money_sources.c.user_id == user_id, money_sources.c.is_default.is_(True))
        .values(is_default=False)
    )
    if exclude_id is not None:
        stmt = stmt.where(money_sources.c.id != exclude_id)
    conn.execute(stmt)


def _coerce_decimal(value, field_name: str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except ArithmeticError as exc:
        raise ValueError(f"{field_name} must be a number.") from exc


def _validate_budget(budget: Decimal) -> Decimal:
    if budget < ZERO:
        raise ValueError("Budget cannot be negative.")
    return budget


def create_money_source(
    conn: Connection,
    user_id: int,
    name: str,
    currency: str,
    balance: Decimal = ZERO,
    budget: Decimal = ZERO,
    icon: str | None = None,
    is_default: bool = False,
    when: datetime | None = None,
) -> dict:
    cleaned_name = (name or "").strip()
    if not cleaned_name:
        raise ValueError("Money source name required.")
    currency = normalize_currency(currency)
    balance = _coerce_decimal(balance, "Balance")
    budget = _validate_budget(_coerce_decimal(budget, "Budget"))

    if is_default:
        clear_default(conn, user_id)

    row = conn.execute(
        insert(money_sources)
        .values(
            user_id=user_id,
            name=cleaned_name,
            currency=currency,
            balance=balance,
            budget=budget,
            icon=icon,
            is_default=bool(is_default),
        )
        .returning(*MONEY_SOURCE_COLUMNS)
    ).mappings().first()
    append_history(conn, user_id, row["id"], row["balance"], row["balance"], currency, when)
    log.info("money_source_created", money_source_id=row["id"], user_id=user_id)
    return dict(row)


def add_funds(
    conn: Connection,
    user_id: int,
    source_id: int,
    amount: Decimal,
    when: datetime | None = None,
) -> AddFundsResult:
    source = lock_money_source(conn, user_id, source_id)
    amount = _coerce_decimal(amount, "Amount")
    if amount <= ZERO:
        log.warning("add_funds_rejected", money_source_id=source_id, amount=str(amount))
        raise ValueError("Amount must be positive when adding funds.")

    new_balance = adjust_balance(conn, source_id, amount)
    append_history(conn, user_id, source_id, new_balance, amount, source["currency"], when)

    budget = _coerce_decimal(source["budget"], "Budget")
    reminder = budget <= ZERO or new_balance > budget
    return AddFundsResult(balance=new_balance, reminder_for_budget=reminder)


def update_money_source(
    conn: Connection,
    user_id: int,
    source_id: int,
    patch: dict,
    when: datetime | None = None,
) -> dict:
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported fields: {', '.join(sorted(unknown))}.")

    current = lock_money_source(conn, user_id, source_id)
    values: dict = {}
    if "name" in patch and patch["name"] is not None:
        cleaned = patch["name"].strip()
        if not cleaned:
            raise ValueError("Money source name required.")
        values["name"] = cleaned
    if patch.get("currency") is not None:
        values["currency"] = normalize_currency(patch["currency"])
    if patch.get("balance") is not None:
        values["balance"] = _coerce_decimal(patch["balance"], "Balance")
    if patch.get("budget") is not None:
        values["budget"] = _validate_budget(_coerce_decimal(patch["budget"], "Budget"))
    if "icon" in patch:
        values["icon"] = patch["icon"]
    if patch.get("is_default") is not None:
        values["is_default"] = bool(patch["is_default"])
        if values["is_default"]:
            clear_default(conn, user_id, exclude_id=source_id)

    row = conn.execute(
        update(money_sources)
        .where(money_sources.c.id == source_id, money_sources.c.user_id == user_id)
        .values(updated_at=func.now(), **values)
        .returning(*MONEY_SOURCE_COLUMNS)
    ).mappings().first()

    delta = _coerce_decimal(row["balance"], "Balance") - _coerce_decimal(current["balance"], "Balance")
    append_history(conn, user_id, source_id, row["balance"], delta, row["currency"], when)
    return dict(row)


def remove_money_source(conn: Connection, user_id: int, source_id: int) -> None:
    lock_money_source(conn, user_id, source_id)
    conn.execute(expenses.delete().where(expenses.c.money_source_id == source_id))
    conn.execute(balance_history.delete().where(balance_history.c.money_source_id == source_id))
    conn.execute(
        money_sources.delete().where(money_sources.c.id == source_id, money_sources.c.user_id == user_id)
    )
    log.info("money_source_deleted", money_source_id=source_id, user_id=user_id)


def with_preferred_currency(row: dict, converter: CurrencyConverter, preferred_currency: str) -> dict:
    enriched = dict(row)
    enriched["balance_in_preferred_currency"] = None
    enriched["budget_in_preferred_currency"] = None
    if normalize_currency(row["currency"]) != preferred_currency:
        enriched["balance_in_preferred_currency"] = converter.convert(
            row["balance"], row["currency"], preferred_currency
        )
        enriched["budget_in_preferred_currency"] = converter.convert(
            row["budget"], row["currency"], preferred_currency
        )
    return enriched


def get_money_source(conn: Connection, user_id: int, source_id: int) -> dict:
    row = conn.execute(
        select(*MONEY_SOURCE_COLUMNS).where(
            money_sources.c.id == source_id, money_sources.c.user_id == user_id
        )
    ).mappings().first()
    if not row:
        raise NotFoundError(f"Money source with ID {source_id} not found.")
    preferred_currency = get_preferred_currency(conn, user_id)
    return with_preferred_currency(dict(row), CurrencyConverter(conn), preferred_currency)


def list_money_sources(
    conn: Connection,
    user_id: int,
    page: int = 1,
    page_size: int = 20,
    search: str | None = None,
    sort_by: str = "updated_at",
    sort_order: str = "desc",
) -> dict:
    sort_column = SORTABLE_FIELDS.get(sort_by)
    if sort_column is None:
        raise ValueError("Invalid sort field.")
    stmt = select(*MONEY_SOURCE_COLUMNS).where(money_sources.c.user_id == user_id)
    if search:
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(money_sources.c.name).like(pattern),
                func.lower(money_sources.c.currency).like(pattern),
                func.lower(money_sources.c.icon).like(pattern),
            )
        )
    order = sort_column.asc() if sort_order.lower() == "asc" else sort_column.desc()
    stmt = stmt.order_by(order, money_sources.c.id.asc())

    rows, meta = paginate(conn, stmt, page, page_size)
    preferred_currency = get_preferred_currency(conn, user_id)
    converter = CurrencyConverter(conn)
    return {
        "data": [with_preferred_currency(row, converter, preferred_currency) for row in rows],
        **meta,
    }


def list_balance_history(
    conn: Connection, user_id: int, money_source_id: int | None = None
) -> list[dict]:
    stmt = select(balance_history).where(balance_history.c.user_id == user_id)
    if money_source_id is not None:
        stmt = stmt.where(balance_history.c.money_source_id == money_source_id)
    rows = conn.execute(
        stmt.order_by(balance_history.c.date.desc(), balance_history.c.id.desc())
    ).mappings().all()
    return [dict(row) for row in rows]


def get_balance_history(conn: Connection, user_id: int, history_id: int) -> dict:
    row = conn.execute(
        select(balance_history).where(
            balance_history.c.id == history_id, balance_history.c.user_id == user_id
        )
    ).mappings().first()
    if not row:
        raise NotFoundError("Balance history record not found.")
    return dict(row)
