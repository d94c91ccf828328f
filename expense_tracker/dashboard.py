"""Read-only dashboard reports.

Every report resolves the viewer's preferred currency once and converts each
contributing amount with the identity-on-missing-rate policy before summing.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.engine import Connection

from expense_tracker.currency_conversion import CurrencyConverter
from expense_tracker.periods import (
    ZERO,
    comparison_window,
    month_key,
    month_start,
    percentage,
    week_key,
    year_start,
)
from expense_tracker.settings_store import get_preferred_currency
from expense_tracker.tables import balance_history, categories, expenses, money_sources


def _expense_rows(conn: Connection, user_id: int, start_date: date | None = None) -> list[dict]:
    stmt = (
        select(
            expenses.c.amount,
            expenses.c.date,
            categories.c.name.label("category"),
            money_sources.c.currency,
        )
        .select_from(
            expenses.join(categories, expenses.c.category_id == categories.c.id).join(
                money_sources, expenses.c.money_source_id == money_sources.c.id
            )
        )
        .where(expenses.c.user_id == user_id)
        .order_by(expenses.c.date.asc(), expenses.c.id.asc())
    )
    if start_date is not None:
        stmt = stmt.where(expenses.c.date >= start_date)
    return [dict(row) for row in conn.execute(stmt).mappings().all()]


def _source_rows(conn: Connection, user_id: int) -> list[dict]:
    rows = conn.execute(
        select(
            money_sources.c.id,
            money_sources.c.name,
            money_sources.c.currency,
            money_sources.c.balance,
            money_sources.c.budget,
        )
        .where(money_sources.c.user_id == user_id)
        .order_by(money_sources.c.id.asc())
    ).mappings().all()
    return [dict(row) for row in rows]


def get_overview(conn: Connection, user_id: int) -> dict:
    preferred_currency = get_preferred_currency(conn, user_id)
    converter = CurrencyConverter(conn)

    total_expenses = ZERO
    for row in _expense_rows(conn, user_id):
        total_expenses += converter.convert_or_identity(row["amount"], row["currency"], preferred_currency)

    total_budget = ZERO
    total_balance = ZERO
    for source in _source_rows(conn, user_id):
        total_budget += converter.convert_or_identity(source["budget"], source["currency"], preferred_currency)
        total_balance += converter.convert_or_identity(source["balance"], source["currency"], preferred_currency)

    return {
        "total_expenses": total_expenses,
        "total_budget": total_budget,
        "total_balance": total_balance,
        "budget_utilization": percentage(total_expenses, total_budget),
        "currency": preferred_currency,
    }


def get_trends(conn: Connection, user_id: int, today: date) -> dict:
    preferred_currency = get_preferred_currency(conn, user_id)
    converter = CurrencyConverter(conn)

    monthly: dict[str, Decimal] = {}
    weekly: dict[str, Decimal] = {}
    for row in _expense_rows(conn, user_id, start_date=year_start(today)):
        amount = converter.convert_or_identity(row["amount"], row["currency"], preferred_currency)
        month = month_key(row["date"])
        week = week_key(row["date"])
        monthly[month] = monthly.get(month, ZERO) + amount
        weekly[week] = weekly.get(week, ZERO) + amount

    return {
        "monthly_trends": [{"date": key, "amount": amount} for key, amount in monthly.items()],
        "weekly_trends": [{"date": key, "amount": amount} for key, amount in weekly.items()],
        "currency": preferred_currency,
    }


def get_expense_composition(conn: Connection, user_id: int) -> dict:
    preferred_currency = get_preferred_currency(conn, user_id)
    converter = CurrencyConverter(conn)

    total = ZERO
    by_category: dict[str, Decimal] = {}
    for row in _expense_rows(conn, user_id):
        amount = converter.convert_or_identity(row["amount"], row["currency"], preferred_currency)
        total += amount
        by_category[row["category"]] = by_category.get(row["category"], ZERO) + amount

    return {
        "category_breakdown": [
            {"category": name, "amount": amount, "percentage": percentage(amount, total)}
            for name, amount in by_category.items()
        ],
        "total_expenses": total,
        "currency": preferred_currency,
    }


def get_budget_comparison(conn: Connection, user_id: int) -> dict:
    preferred_currency = get_preferred_currency(conn, user_id)
    converter = CurrencyConverter(conn)

    spent_by_source: dict[int, Decimal] = {}
    for row in conn.execute(
        select(expenses.c.money_source_id, expenses.c.amount).where(expenses.c.user_id == user_id)
    ).mappings():
        spent_by_source[row["money_source_id"]] = spent_by_source.get(row["money_source_id"], ZERO) + row["amount"]

    comparisons = []
    total_budget = ZERO
    total_expense = ZERO
    for source in _source_rows(conn, user_id):
        budget = converter.convert_or_identity(source["budget"], source["currency"], preferred_currency)
        spent = converter.convert_or_identity(
            spent_by_source.get(source["id"], ZERO), source["currency"], preferred_currency
        )
        remaining = budget - spent
        comparisons.append(
            {
                "money_source": source["name"],
                "budget": budget,
                "expense": spent,
                "remaining": remaining,
                "remaining_percentage": percentage(remaining, budget),
            }
        )
        total_budget += budget
        total_expense += spent

    return {
        "comparisons": comparisons,
        "total_budget": total_budget,
        "total_expense": total_expense,
        "total_remaining": total_budget - total_expense,
        "currency": preferred_currency,
    }


def get_expenses_overview(conn: Connection, user_id: int, today: date, period: str | None = None) -> dict:
    preferred_currency = get_preferred_currency(conn, user_id)
    converter = CurrencyConverter(conn)
    this_month_start = month_start(today)

    this_month_total = ZERO
    year_to_date_total = ZERO
    category_totals: dict[str, Decimal] = {}
    for row in _expense_rows(conn, user_id, start_date=year_start(today)):
        amount = converter.convert_or_identity(row["amount"], row["currency"], preferred_currency)
        year_to_date_total += amount
        if row["date"] >= this_month_start:
            this_month_total += amount
            category_totals[row["category"]] = category_totals.get(row["category"], ZERO) + amount

    top_categories = sorted(category_totals.items(), key=lambda item: item[1], reverse=True)[:3]
    return {
        "summary": f"Summary of your expenses for {period or 'this month'}",
        "this_month": {"total": this_month_total, "currency": preferred_currency},
        "year_to_date": {"total": year_to_date_total, "currency": preferred_currency},
        "top_categories": [
            {"name": name, "amount": amount, "percentage": percentage(amount, this_month_total, "0.1")}
            for name, amount in top_categories
        ],
    }


def _previous_balances(conn: Connection, user_id: int, now: datetime, period: str | None) -> dict[int, Decimal]:
    start, end = comparison_window(now, period)
    rows = conn.execute(
        select(balance_history.c.money_source_id, balance_history.c.balance)
        .where(
            balance_history.c.user_id == user_id,
            balance_history.c.date >= start,
            balance_history.c.date < end,
        )
        .order_by(balance_history.c.date.desc(), balance_history.c.id.desc())
    ).mappings().all()
    latest: dict[int, Decimal] = {}
    for row in rows:
        latest.setdefault(row["money_source_id"], row["balance"])
    return latest


def get_total_balance(conn: Connection, user_id: int, now: datetime, period: str | None = None) -> dict:
    preferred_currency = get_preferred_currency(conn, user_id)
    converter = CurrencyConverter(conn)
    previous_balances = _previous_balances(conn, user_id, now, period)

    total_balance = ZERO
    details = []
    for source in _source_rows(conn, user_id):
        current = converter.convert_or_identity(source["balance"], source["currency"], preferred_currency)
        total_balance += current

        change = ZERO
        previous_raw = previous_balances.get(source["id"])
        if previous_raw is not None:
            # Snapshots are taken in the source currency, which is assumed unchanged.
            previous = converter.convert_or_identity(previous_raw, source["currency"], preferred_currency)
            change = percentage(current - previous, previous, "0.1")

        details.append(
            {
                "id": source["id"],
                "name": source["name"],
                "balance": current,
                "currency": preferred_currency,
                "percentage_change": change,
            }
        )

    return {
        "total_balance": total_balance,
        "currency": preferred_currency,
        "money_sources": details,
    }
