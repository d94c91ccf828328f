import unittest
from datetime import date, datetime
from decimal import Decimal

from expense_tracker.categories import list_categories
from expense_tracker.dashboard import (
    get_budget_comparison,
    get_expense_composition,
    get_expenses_overview,
    get_overview,
    get_total_balance,
    get_trends,
)
from expense_tracker.expenses import create_expense
from expense_tracker.money_sources import add_funds, create_money_source
from expense_tracker.periods import comparison_window, percentage, trailing_months_window, week_key
from expense_tracker.tests.support import add_user, make_engine, seed_rates

TODAY = date(2024, 5, 20)
NOW = datetime(2024, 5, 20, 12, 0)


class DashboardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        with self.engine.begin() as conn:
            seed_rates(conn)
            self.user_id = add_user(conn, "owner@example.com")
            by_name = {row["name"]: row["id"] for row in list_categories(conn, self.user_id)}
            food = by_name["Food & Dining"]
            transport = by_name["Transportation"]
            self.usd = create_money_source(
                conn,
                self.user_id,
                "Card",
                "USD",
                balance=Decimal("100"),
                budget=Decimal("200"),
                when=datetime(2024, 4, 25),
            )["id"]
            self.eur = create_money_source(
                conn,
                self.user_id,
                "Euro wallet",
                "EUR",
                balance=Decimal("50"),
                budget=Decimal("100"),
                when=datetime(2024, 1, 1),
            )["id"]
            for amount, day, category_id, source_id in (
                ("20", date(2024, 5, 3), food, self.usd),
                ("10", date(2024, 5, 10), transport, self.eur),
                ("40", date(2024, 2, 14), food, self.usd),
                ("5", date(2023, 12, 31), food, self.usd),
            ):
                create_expense(
                    conn,
                    self.user_id,
                    amount=Decimal(amount),
                    expense_date=day,
                    category_id=category_id,
                    money_source_id=source_id,
                )

    def test_overview_converts_everything_to_preferred_currency(self) -> None:
        with self.engine.begin() as conn:
            overview = get_overview(conn, self.user_id)

        self.assertEqual(overview["currency"], "USD")
        self.assertEqual(overview["total_expenses"], Decimal("85"))
        self.assertEqual(overview["total_budget"], Decimal("400"))
        self.assertEqual(overview["total_balance"], Decimal("115"))
        self.assertEqual(overview["budget_utilization"], Decimal("21.25"))

    def test_trends_cover_current_year_only(self) -> None:
        with self.engine.begin() as conn:
            trends = get_trends(conn, self.user_id, TODAY)

        self.assertEqual(
            trends["monthly_trends"],
            [{"date": "2024-02", "amount": Decimal("40")}, {"date": "2024-05", "amount": Decimal("40")}],
        )
        self.assertEqual([row["date"] for row in trends["weekly_trends"]], ["2024-W07", "2024-W18", "2024-W19"])

    def test_composition_percentages(self) -> None:
        with self.engine.begin() as conn:
            composition = get_expense_composition(conn, self.user_id)

        breakdown = {row["category"]: row for row in composition["category_breakdown"]}
        self.assertEqual(composition["total_expenses"], Decimal("85"))
        self.assertEqual(breakdown["Food & Dining"]["percentage"], Decimal("76.47"))
        self.assertEqual(breakdown["Transportation"]["percentage"], Decimal("23.53"))

    def test_budget_comparison_per_source(self) -> None:
        with self.engine.begin() as conn:
            comparison = get_budget_comparison(conn, self.user_id)

        rows = {row["money_source"]: row for row in comparison["comparisons"]}
        self.assertEqual(rows["Card"]["remaining"], Decimal("135"))
        self.assertEqual(rows["Card"]["remaining_percentage"], Decimal("67.50"))
        self.assertEqual(rows["Euro wallet"]["budget"], Decimal("200"))
        self.assertEqual(rows["Euro wallet"]["expense"], Decimal("20"))
        self.assertEqual(comparison["total_remaining"], Decimal("315"))

    def test_expenses_overview_month_and_year(self) -> None:
        with self.engine.begin() as conn:
            overview = get_expenses_overview(conn, self.user_id, TODAY)

        self.assertEqual(overview["this_month"]["total"], Decimal("40"))
        self.assertEqual(overview["year_to_date"]["total"], Decimal("80"))
        self.assertEqual(
            [(row["name"], row["percentage"]) for row in overview["top_categories"]],
            [("Food & Dining", Decimal("50.0")), ("Transportation", Decimal("50.0"))],
        )

    def test_total_balance_compares_with_last_snapshot_in_window(self) -> None:
        with self.engine.begin() as conn:
            monthly = get_total_balance(conn, self.user_id, NOW)
            yearly = get_total_balance(conn, self.user_id, NOW, period="year-to-date")

        changes = {row["name"]: row["percentage_change"] for row in monthly["money_sources"]}
        self.assertEqual(monthly["total_balance"], Decimal("115"))
        self.assertEqual(changes["Card"], Decimal("-65.0"))
        self.assertEqual(changes["Euro wallet"], Decimal("0"))

        yearly_changes = {row["name"]: row["percentage_change"] for row in yearly["money_sources"]}
        self.assertEqual(yearly_changes["Euro wallet"], Decimal("-20.0"))

    def test_snapshots_from_the_last_day_are_not_a_baseline(self) -> None:
        with self.engine.begin() as conn:
            add_funds(conn, self.user_id, self.usd, Decimal("15"), when=datetime(2024, 5, 19, 8, 0))
            add_funds(conn, self.user_id, self.usd, Decimal("15"), when=datetime(2024, 5, 20, 2, 0))
            monthly = get_total_balance(conn, self.user_id, NOW)

        changes = {row["name"]: row["percentage_change"] for row in monthly["money_sources"]}
        self.assertEqual(changes["Card"], Decimal("30.0"))

    def test_empty_user_gets_zeroes(self) -> None:
        with self.engine.begin() as conn:
            empty_user = add_user(conn, "empty@example.com")
            overview = get_overview(conn, empty_user)
            composition = get_expense_composition(conn, empty_user)

        self.assertEqual(overview["budget_utilization"], Decimal("0"))
        self.assertEqual(composition["category_breakdown"], [])


class PeriodHelperTests(unittest.TestCase):
    def test_week_key_counts_from_first_of_january(self) -> None:
        self.assertEqual(week_key(date(2024, 1, 1)), "2024-W01")
        self.assertEqual(week_key(date(2024, 1, 6)), "2024-W01")
        self.assertEqual(week_key(date(2024, 1, 7)), "2024-W02")

    def test_comparison_window_clamps_month_end(self) -> None:
        self.assertEqual(
            comparison_window(datetime(2024, 3, 31, 9, 30), None),
            (datetime(2024, 2, 29, 9, 30), datetime(2024, 3, 30, 9, 30)),
        )
        self.assertEqual(
            comparison_window(datetime(2024, 2, 29, 18, 0), "year-to-date"),
            (datetime(2023, 2, 28, 18, 0), datetime(2024, 2, 28, 18, 0)),
        )

    def test_trailing_window_starts_on_first_of_month(self) -> None:
        self.assertEqual(trailing_months_window(date(2024, 2, 15), 3), (date(2023, 12, 1), date(2024, 2, 15)))
        with self.assertRaises(ValueError):
            trailing_months_window(date(2024, 2, 15), 0)

    def test_percentage_of_zero_whole_is_zero(self) -> None:
        self.assertEqual(percentage(Decimal("5"), Decimal("0")), Decimal("0"))
        self.assertEqual(percentage(Decimal("1"), Decimal("3")), Decimal("33.33"))


if __name__ == "__main__":
    unittest.main()
