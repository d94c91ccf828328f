from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Mapping

import structlog
from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from expense_tracker.ai_parsing import generate_benchmark_insights
from expense_tracker.currency_conversion import CurrencyConverter
from expense_tracker.periods import HUNDRED, ZERO, trailing_months_window
from expense_tracker.settings_store import get_gemini_api_key, get_preferred_currency
from expense_tracker.tables import categories, expenses, money_sources

log = structlog.get_logger(__name__)

MINIMUM_COHORT_SIZE = 3
MIN_SPENDING_FOR_PERCENTAGE = Decimal("10")
MAX_PERCENTAGE_DIFFERENCE = Decimal("500")
MINIMUM_CATEGORY_AMOUNT = Decimal("5")
NOT_ENOUGH_USERS = (
    "Not enough users to generate spending insights. "
    "Try again later when more data is available."
)

TWO_PLACES = Decimal("0.01")
ONE_PLACE = Decimal("0.1")


@dataclass(frozen=True)
class CategoryComparison:
    category_name: str
    user_amount: Decimal
    average_amount: Decimal
    percentage_difference: Decimal
    currency: str


@dataclass(frozen=True)
class SpendingComparison:
    insights: str
    overall_difference_percentage: Decimal
    comparison_user_count: int
    user_monthly_spending: Decimal
    average_monthly_spending: Decimal
    currency: str
    category_comparisons: list[CategoryComparison] = field(default_factory=list)


def _round(value: Decimal, places: Decimal) -> Decimal:
    return value.quantize(places, rounding=ROUND_HALF_UP)


def overall_difference(user_monthly: Decimal, average_monthly: Decimal) -> Decimal:
    """Relative difference against the cohort, capped at +/-500%.

    Returns zero when the cohort average is too small to be meaningful.
    """
    if average_monthly < MIN_SPENDING_FOR_PERCENTAGE:
        return ZERO
    difference = (user_monthly - average_monthly) / average_monthly * HUNDRED
    return max(-MAX_PERCENTAGE_DIFFERENCE, min(MAX_PERCENTAGE_DIFFERENCE, difference))


def category_difference(user_amount: Decimal, average_amount: Decimal) -> Decimal:
    if average_amount > ZERO:
        if user_amount == ZERO:
            return Decimal("-100")
        return (user_amount - average_amount) / average_amount * HUNDRED
    if user_amount > ZERO:
        return HUNDRED
    return ZERO


def build_category_comparisons(
    user_totals: Mapping[str, Decimal],
    cohort_totals: Mapping[str, Decimal],
    cohort_size: int,
    currency: str,
) -> list[CategoryComparison]:
    comparisons = []
    names = list(dict.fromkeys([*user_totals.keys(), *cohort_totals.keys()]))
    for name in names:
        user_amount = user_totals.get(name, ZERO)
        total_other = cohort_totals.get(name, ZERO)
        average_amount = total_other / cohort_size if cohort_size > 0 else ZERO
        if user_amount < MINIMUM_CATEGORY_AMOUNT and average_amount < MINIMUM_CATEGORY_AMOUNT:
            continue
        comparisons.append(
            CategoryComparison(
                category_name=name,
                user_amount=_round(user_amount, TWO_PLACES),
                average_amount=_round(average_amount, TWO_PLACES),
                percentage_difference=_round(category_difference(user_amount, average_amount), ONE_PLACE),
                currency=currency,
            )
        )
    comparisons.sort(key=lambda item: abs(item.percentage_difference), reverse=True)
    return comparisons


def count_cohort(conn: Connection, user_id: int, start_date: date, end_date: date) -> int:
    """Distinct other users with at least one expense in the window."""
    grouped = (
        select(expenses.c.user_id)
        .where(
            expenses.c.user_id != user_id,
            expenses.c.date >= start_date,
            expenses.c.date <= end_date,
        )
        .group_by(expenses.c.user_id)
    )
    return conn.execute(select(func.count()).select_from(grouped.subquery())).scalar_one()


def totals_by_category(
    conn: Connection,
    converter: CurrencyConverter,
    user_filter,
    start_date: date,
    end_date: date,
    preferred_currency: str,
) -> dict[str, Decimal]:
    rows = conn.execute(
        select(expenses.c.amount, categories.c.name.label("category"), money_sources.c.currency)
        .select_from(
            expenses.join(categories, expenses.c.category_id == categories.c.id).join(
                money_sources, expenses.c.money_source_id == money_sources.c.id
            )
        )
        .where(user_filter, expenses.c.date >= start_date, expenses.c.date <= end_date)
    ).mappings()
    totals: dict[str, Decimal] = {}
    for row in rows:
        amount = converter.convert_or_identity(row["amount"], row["currency"], preferred_currency)
        totals[row["category"]] = totals.get(row["category"], ZERO) + amount
    return totals


def compare_spending_patterns(
    conn: Connection,
    user_id: int,
    today: date,
    months: int = 3,
    insights: Callable[[dict], str] | None = None,
) -> SpendingComparison:
    preferred_currency = get_preferred_currency(conn, user_id)
    converter = CurrencyConverter(conn)
    start_date, end_date = trailing_months_window(today, months)
    month_count = Decimal(months)

    user_totals = totals_by_category(
        conn, converter, expenses.c.user_id == user_id, start_date, end_date, preferred_currency
    )
    user_monthly = sum(user_totals.values(), ZERO) / month_count

    cohort_size = count_cohort(conn, user_id, start_date, end_date)
    if cohort_size < MINIMUM_COHORT_SIZE:
        log.info("benchmark_cohort_too_small", user_id=user_id, cohort_size=cohort_size)
        return SpendingComparison(
            insights=NOT_ENOUGH_USERS,
            overall_difference_percentage=ZERO,
            comparison_user_count=cohort_size,
            user_monthly_spending=_round(user_monthly, TWO_PLACES),
            average_monthly_spending=ZERO,
            currency=preferred_currency,
            category_comparisons=[],
        )

    cohort_totals = totals_by_category(
        conn, converter, expenses.c.user_id != user_id, start_date, end_date, preferred_currency
    )
    average_monthly = sum(cohort_totals.values(), ZERO) / cohort_size / month_count
    comparisons = build_category_comparisons(user_totals, cohort_totals, cohort_size, preferred_currency)

    summary = {
        "category_comparisons": [asdict(item) for item in comparisons],
        "overall_difference_percentage": _round(overall_difference(user_monthly, average_monthly), ONE_PLACE),
        "user_monthly_spending": _round(user_monthly, TWO_PLACES),
        "average_monthly_spending": _round(average_monthly, TWO_PLACES),
        "comparison_user_count": cohort_size,
        "currency": preferred_currency,
    }
    if insights is None:
        api_key = get_gemini_api_key(conn, user_id)
        text = generate_benchmark_insights(api_key, summary)
    else:
        text = insights(summary)

    return SpendingComparison(
        insights=text,
        overall_difference_percentage=summary["overall_difference_percentage"],
        comparison_user_count=cohort_size,
        user_monthly_spending=summary["user_monthly_spending"],
        average_monthly_spending=summary["average_monthly_spending"],
        currency=preferred_currency,
        category_comparisons=comparisons,
    )
