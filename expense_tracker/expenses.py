"""Expense ledger.

Each mutation computes the balance delta it owes the money source ledger and
applies it on the same connection, so the expense row and the balance change
share one transaction.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from decimal import Decimal

import structlog
from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.engine import Connection

from expense_tracker.categories import visible_to
from expense_tracker.config import normalize_currency
from expense_tracker.currency_conversion import CurrencyConverter
from expense_tracker.errors import ExpenseParseError, NotFoundError
from expense_tracker.money_sources import adjust_balance, lock_money_source
from expense_tracker.pagination import paginate
from expense_tracker.settings_store import get_preferred_currency
from expense_tracker.tables import categories, expenses, money_sources

log = structlog.get_logger(__name__)

ZERO = Decimal("0")

EXPENSE_COLUMNS = (
    expenses.c.id,
    expenses.c.user_id,
    expenses.c.category_id,
    expenses.c.money_source_id,
    expenses.c.amount,
    expenses.c.date,
    expenses.c.notes,
    expenses.c.created_at,
    expenses.c.updated_at,
)
ENRICHED_COLUMNS = EXPENSE_COLUMNS + (
    categories.c.name.label("category_name"),
    categories.c.icon.label("category_icon"),
    money_sources.c.name.label("money_source_name"),
    money_sources.c.currency.label("money_source_currency"),
)
SORTABLE_FIELDS = {
    "date": expenses.c.date,
    "amount": expenses.c.amount,
    "created_at": expenses.c.created_at,
    "updated_at": expenses.c.updated_at,
}
PATCHABLE_FIELDS = {"amount", "date", "notes", "category_id", "money_source_id"}


def _positive_amount(value) -> Decimal:
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    if amount <= ZERO:
        raise ValueError("Amount must be greater than zero.")
    return amount


def _require_category(conn: Connection, user_id: int, category_id: int) -> None:
    exists = conn.execute(
        select(categories.c.id).where(categories.c.id == category_id, visible_to(user_id))
    ).first()
    if not exists:
        raise NotFoundError(f"Category with ID {category_id} not found.")


def _load_expense(conn: Connection, user_id: int, expense_id: int) -> dict:
    row = conn.execute(
        select(*EXPENSE_COLUMNS)
        .where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
        .with_for_update()
    ).mappings().first()
    if not row:
        raise NotFoundError(f"Expense with ID {expense_id} not found.")
    return dict(row)


def create_expense(
    conn: Connection,
    user_id: int,
    amount: Decimal,
    expense_date: date,
    category_id: int,
    money_source_id: int,
    notes: str | None = None,
) -> dict:
    amount = _positive_amount(amount)
    lock_money_source(conn, user_id, money_source_id)
    _require_category(conn, user_id, category_id)

    expense_id = conn.execute(
        insert(expenses)
        .values(
            user_id=user_id,
            category_id=category_id,
            money_source_id=money_source_id,
            amount=amount,
            date=expense_date,
            notes=notes.strip() if notes else None,
        )
        .returning(expenses.c.id)
    ).scalar_one()
    adjust_balance(conn, money_source_id, -amount)
    log.info("expense_created", expense_id=expense_id, user_id=user_id, money_source_id=money_source_id)
    return get_expense(conn, user_id, expense_id)


def update_expense(conn: Connection, user_id: int, expense_id: int, patch: dict) -> dict:
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported fields: {', '.join(sorted(unknown))}.")

    previous = _load_expense(conn, user_id, expense_id)
    previous_amount = previous["amount"]
    previous_source = previous["money_source_id"]

    new_amount = previous_amount
    if patch.get("amount") is not None:
        new_amount = _positive_amount(patch["amount"])
    new_source = patch.get("money_source_id") or previous_source

    if new_source != previous_source:
        lock_money_source(conn, user_id, new_source)
    if patch.get("category_id") is not None:
        _require_category(conn, user_id, patch["category_id"])

    values: dict = {"amount": new_amount, "money_source_id": new_source, "updated_at": func.now()}
    if patch.get("date") is not None:
        values["date"] = patch["date"]
    if "notes" in patch:
        values["notes"] = patch["notes"].strip() if patch["notes"] else None
    if patch.get("category_id") is not None:
        values["category_id"] = patch["category_id"]

    conn.execute(
        update(expenses)
        .where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
        .values(**values)
    )

    if new_source == previous_source:
        amount_difference = new_amount - previous_amount
        if amount_difference != ZERO:
            adjust_balance(conn, previous_source, -amount_difference)
    else:
        adjust_balance(conn, previous_source, previous_amount)
        adjust_balance(conn, new_source, -new_amount)

    return get_expense(conn, user_id, expense_id)


def remove_expense(conn: Connection, user_id: int, expense_id: int) -> None:
    expense = _load_expense(conn, user_id, expense_id)
    adjust_balance(conn, expense["money_source_id"], expense["amount"])
    conn.execute(expenses.delete().where(expenses.c.id == expense_id))
    log.info("expense_deleted", expense_id=expense_id, user_id=user_id)


def bulk_remove_expenses(conn: Connection, user_id: int, expense_ids: list[int]) -> int:
    """Delete many expenses, refunding each money source once with the summed amount.

    Every id must belong to the caller; otherwise nothing is touched.
    """
    ids = list(dict.fromkeys(expense_ids or []))
    if not ids:
        raise ValueError("At least one expense id is required.")

    rows = conn.execute(
        select(expenses.c.id, expenses.c.money_source_id, expenses.c.amount)
        .where(expenses.c.id.in_(ids), expenses.c.user_id == user_id)
        .with_for_update()
    ).mappings().all()
    if len(rows) != len(ids):
        found = {row["id"] for row in rows}
        missing = [expense_id for expense_id in ids if expense_id not in found]
        log.warning("bulk_delete_rejected", user_id=user_id, missing=missing)
        raise NotFoundError(f"Expenses not found: {', '.join(str(m) for m in missing)}.")

    refunds: dict[int, Decimal] = defaultdict(lambda: ZERO)
    for row in rows:
        refunds[row["money_source_id"]] += row["amount"]
    for source_id in sorted(refunds):
        adjust_balance(conn, source_id, refunds[source_id])

    conn.execute(expenses.delete().where(expenses.c.id.in_(ids), expenses.c.user_id == user_id))
    log.info("expenses_bulk_deleted", user_id=user_id, count=len(ids), money_sources=len(refunds))
    return len(ids)


def create_expense_from_text(conn: Connection, user_id: int, text: str, parser) -> dict:
    """Parse free text with ``parser`` and record the result as an expense.

    ``parser`` is any callable ``(conn, user_id, text) -> ParsedExpense``.
    """
    if not text or not text.strip():
        raise ValueError("Expense text required.")
    try:
        parsed = parser(conn, user_id, text.strip())
    except ExpenseParseError as exc:
        log.warning("expense_text_parse_failed", user_id=user_id, error=str(exc))
        raise NotFoundError(f"Could not parse expense: {exc}") from exc

    if parsed.amount is None or parsed.category_id is None or parsed.money_source_id is None:
        raise NotFoundError("Could not parse expense: missing amount, category or money source.")
    return create_expense(
        conn,
        user_id,
        amount=parsed.amount,
        expense_date=parsed.date,
        category_id=parsed.category_id,
        money_source_id=parsed.money_source_id,
        notes=parsed.notes,
    )


def _enriched_select():
    return select(*ENRICHED_COLUMNS).select_from(
        expenses.join(categories, expenses.c.category_id == categories.c.id).join(
            money_sources, expenses.c.money_source_id == money_sources.c.id
        )
    )


def to_full_shape(row: dict, converter: CurrencyConverter, preferred_currency: str) -> dict:
    source_currency = normalize_currency(row["money_source_currency"])
    amount_in_preferred = None
    if source_currency != preferred_currency:
        amount_in_preferred = converter.convert(row["amount"], source_currency, preferred_currency)
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "category_id": row["category_id"],
        "money_source_id": row["money_source_id"],
        "amount": row["amount"],
        "date": row["date"],
        "notes": row["notes"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "category": {
            "id": row["category_id"],
            "name": row["category_name"],
            "icon": row["category_icon"],
        },
        "money_source": {
            "id": row["money_source_id"],
            "name": row["money_source_name"],
            "currency": source_currency,
        },
        "amount_in_preferred_currency": amount_in_preferred,
    }


def get_expense(conn: Connection, user_id: int, expense_id: int) -> dict:
    row = conn.execute(
        _enriched_select().where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
    ).mappings().first()
    if not row:
        raise NotFoundError(f"Expense with ID {expense_id} not found.")
    preferred_currency = get_preferred_currency(conn, user_id)
    return to_full_shape(dict(row), CurrencyConverter(conn), preferred_currency)


def list_expenses(
    conn: Connection,
    user_id: int,
    page: int = 1,
    page_size: int = 20,
    search: str | None = None,
    category_id: int | None = None,
    money_source_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    sort_by: str = "updated_at",
    sort_order: str = "desc",
) -> dict:
    sort_column = SORTABLE_FIELDS.get(sort_by)
    if sort_column is None:
        raise ValueError("Invalid sort field.")
    if start_date and end_date and start_date > end_date:
        raise ValueError("Start date must be on or before end date.")

    stmt = _enriched_select().where(expenses.c.user_id == user_id)
    if category_id is not None:
        stmt = stmt.where(expenses.c.category_id == category_id)
    if money_source_id is not None:
        stmt = stmt.where(expenses.c.money_source_id == money_source_id)
    if start_date is not None:
        stmt = stmt.where(expenses.c.date >= start_date)
    if end_date is not None:
        stmt = stmt.where(expenses.c.date <= end_date)
    if search:
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(expenses.c.notes).like(pattern),
                func.lower(categories.c.name).like(pattern),
                func.lower(money_sources.c.name).like(pattern),
            )
        )
    order = sort_column.asc() if sort_order.lower() == "asc" else sort_column.desc()
    stmt = stmt.order_by(order, expenses.c.id.desc())

    rows, meta = paginate(conn, stmt, page, page_size)
    preferred_currency = get_preferred_currency(conn, user_id)
    converter = CurrencyConverter(conn)
    return {"data": [to_full_shape(row, converter, preferred_currency) for row in rows], **meta}
