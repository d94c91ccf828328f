"""Whole-account export and import.

Import replaces each section that is present in the payload and runs on the
caller's transaction, so a single bad row rolls back every section. Money
source balances are restored as exported: they already include the debits
of the exported expenses, so imported expenses do not debit them again.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import structlog
from pydantic import BaseModel
from sqlalchemy import insert, select
from sqlalchemy.engine import Connection

from expense_tracker.categories import list_categories, name_taken
from expense_tracker.config import normalize_currency
from expense_tracker.errors import CategoryInUseError, NotFoundError
from expense_tracker.money_sources import utcnow
from expense_tracker.settings_store import get_preferred_currency, upsert_settings
from expense_tracker.tables import balance_history, categories, expenses, money_sources, users

log = structlog.get_logger(__name__)


class ImportedMoneySource(BaseModel):
    id: int | None = None
    name: str
    currency: str
    balance: Decimal = Decimal("0")
    budget: Decimal = Decimal("0")
    icon: str | None = None
    is_default: bool = False


class ImportedCategory(BaseModel):
    id: int | None = None
    name: str
    icon: str | None = None
    color: str | None = None
    is_default: bool = False


class ImportedExpense(BaseModel):
    amount: Decimal
    date: date
    category_id: int
    money_source_id: int
    notes: str | None = None


class ImportedBalanceHistory(BaseModel):
    money_source_id: int
    date: datetime
    balance: Decimal
    amount: Decimal = Decimal("0")
    currency: str | None = None


class ImportedUser(BaseModel):
    name: str | None = None


class ImportedSettings(BaseModel):
    preferred_currency: str | None = None


class ImportPayload(BaseModel):
    user: ImportedUser | None = None
    app_settings: ImportedSettings | None = None
    money_sources: list[ImportedMoneySource] | None = None
    categories: list[ImportedCategory] | None = None
    expenses: list[ImportedExpense] | None = None
    balance_histories: list[ImportedBalanceHistory] | None = None


def export_data(conn: Connection, user_id: int) -> dict:
    user = conn.execute(
        select(users.c.email, users.c.name).where(users.c.id == user_id)
    ).mappings().first()
    if not user:
        raise NotFoundError("User not found.")

    def rows(table, order_column):
        result = conn.execute(
            select(table).where(table.c.user_id == user_id).order_by(order_column)
        ).mappings().all()
        return [dict(row) for row in result]

    return {
        "user": dict(user),
        "app_settings": {"preferred_currency": get_preferred_currency(conn, user_id)},
        "money_sources": rows(money_sources, money_sources.c.id),
        "categories": list_categories(conn, user_id),
        "expenses": rows(expenses, expenses.c.id),
        "balance_histories": rows(balance_history, balance_history.c.id),
    }


def _replace_money_sources(conn: Connection, user_id: int, items: list[ImportedMoneySource]) -> dict[int, int]:
    conn.execute(expenses.delete().where(expenses.c.user_id == user_id))
    conn.execute(balance_history.delete().where(balance_history.c.user_id == user_id))
    conn.execute(money_sources.delete().where(money_sources.c.user_id == user_id))

    id_map: dict[int, int] = {}
    default_seen = False
    for item in items:
        if item.budget < 0:
            raise ValueError(f"Money source '{item.name}' has a negative budget.")
        is_default = item.is_default and not default_seen
        default_seen = default_seen or is_default
        new_id = conn.execute(
            insert(money_sources)
            .values(
                user_id=user_id,
                name=item.name.strip(),
                currency=normalize_currency(item.currency),
                balance=item.balance,
                budget=item.budget,
                icon=item.icon,
                is_default=is_default,
            )
            .returning(money_sources.c.id)
        ).scalar_one()
        if item.id is not None:
            id_map[item.id] = new_id
    return id_map


def _replace_categories(conn: Connection, user_id: int, items: list[ImportedCategory]) -> dict[int, int]:
    conn.execute(
        categories.delete().where(categories.c.user_id == user_id, categories.c.is_default.is_(False))
    )
    id_map: dict[int, int] = {}
    for item in items:
        if item.is_default:
            continue
        cleaned = item.name.strip()
        if not cleaned or name_taken(conn, user_id, cleaned):
            raise ValueError(f"Category '{item.name}' is empty or duplicated.")
        new_id = conn.execute(
            insert(categories)
            .values(user_id=user_id, name=cleaned, icon=item.icon, color=item.color, is_default=False)
            .returning(categories.c.id)
        ).scalar_one()
        if item.id is not None:
            id_map[item.id] = new_id
    return id_map


def _resolve(id_map: dict[int, int], value: int) -> int:
    return id_map.get(value, value)


def import_data(conn: Connection, user_id: int, payload: ImportPayload) -> dict:
    exists = conn.execute(select(users.c.id).where(users.c.id == user_id)).first()
    if not exists:
        raise NotFoundError("User not found.")

    if payload.user is not None:
        values = payload.user.model_dump(exclude_none=True)
        if values:
            conn.execute(users.update().where(users.c.id == user_id).values(**values))
    if payload.app_settings is not None and payload.app_settings.preferred_currency:
        upsert_settings(conn, user_id, preferred_currency=payload.app_settings.preferred_currency)

    source_map: dict[int, int] = {}
    category_map: dict[int, int] = {}
    if payload.expenses is not None:
        conn.execute(expenses.delete().where(expenses.c.user_id == user_id))
    if payload.money_sources:
        source_map = _replace_money_sources(conn, user_id, payload.money_sources)
    if payload.categories and payload.expenses is None and not payload.money_sources:
        in_use = conn.execute(
            select(expenses.c.id)
            .select_from(expenses.join(categories, expenses.c.category_id == categories.c.id))
            .where(
                expenses.c.user_id == user_id,
                categories.c.user_id == user_id,
                categories.c.is_default.is_(False),
            )
            .limit(1)
        ).first()
        if in_use:
            raise CategoryInUseError("Categories used by existing expenses cannot be replaced.")
    if payload.categories:
        category_map = _replace_categories(conn, user_id, payload.categories)

    owned_sources = {
        row.id: row.currency
        for row in conn.execute(
            select(money_sources.c.id, money_sources.c.currency).where(money_sources.c.user_id == user_id)
        )
    }
    visible_categories = {category["id"] for category in list_categories(conn, user_id)}

    imported_expenses = 0
    if payload.expenses:
        rows = []
        for index, item in enumerate(payload.expenses, start=1):
            source_id = _resolve(source_map, item.money_source_id)
            category_id = _resolve(category_map, item.category_id)
            if source_id not in owned_sources:
                raise NotFoundError(f"Expense {index} references an unknown money source.")
            if category_id not in visible_categories:
                raise NotFoundError(f"Expense {index} references an unknown category.")
            if item.amount <= 0:
                raise ValueError(f"Expense {index} must have a positive amount.")
            rows.append(
                {
                    "user_id": user_id,
                    "category_id": category_id,
                    "money_source_id": source_id,
                    "amount": item.amount,
                    "date": item.date,
                    "notes": item.notes,
                }
            )
        conn.execute(insert(expenses), rows)
        imported_expenses = len(rows)

    imported_history = 0
    if payload.balance_histories:
        conn.execute(balance_history.delete().where(balance_history.c.user_id == user_id))
        rows = []
        for index, item in enumerate(payload.balance_histories, start=1):
            source_id = _resolve(source_map, item.money_source_id)
            if source_id not in owned_sources:
                raise NotFoundError(f"Balance history {index} references an unknown money source.")
            rows.append(
                {
                    "user_id": user_id,
                    "money_source_id": source_id,
                    "date": item.date,
                    "balance": item.balance,
                    "amount": item.amount,
                    "currency": normalize_currency(item.currency or owned_sources[source_id]),
                }
            )
        conn.execute(insert(balance_history), rows)
        imported_history = len(rows)
    elif payload.money_sources:
        # Fresh sources still get their opening snapshot.
        now = utcnow()
        for source_id, currency in owned_sources.items():
            balance = conn.execute(
                select(money_sources.c.balance).where(money_sources.c.id == source_id)
            ).scalar_one()
            conn.execute(
                insert(balance_history).values(
                    user_id=user_id,
                    money_source_id=source_id,
                    date=now,
                    balance=balance,
                    amount=balance,
                    currency=currency,
                )
            )

    summary = {
        "money_sources": len(owned_sources) if payload.money_sources else 0,
        "categories": len(category_map) if payload.categories else 0,
        "expenses": imported_expenses,
        "balance_histories": imported_history,
    }
    log.info("data_imported", user_id=user_id, **summary)
    return summary
