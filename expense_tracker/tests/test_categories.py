import unittest
from datetime import date
from decimal import Decimal

from expense_tracker.categories import (
    DEFAULT_CATEGORIES,
    create_category,
    delete_category,
    ensure_default_categories,
    get_category,
    list_categories,
    update_category,
)
from expense_tracker.errors import CategoryInUseError, NotFoundError
from expense_tracker.expenses import create_expense
from expense_tracker.money_sources import create_money_source
from expense_tracker.tests.support import add_user, make_engine


class CategoryRuleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        with self.engine.begin() as conn:
            self.user_id = add_user(conn, "owner@example.com")
            self.other_user_id = add_user(conn, "other@example.com")

    def test_defaults_are_seeded_once_and_shared(self) -> None:
        with self.engine.begin() as conn:
            ensure_default_categories(conn)
            mine = list_categories(conn, self.user_id)
            theirs = list_categories(conn, self.other_user_id)

        self.assertEqual(len(mine), len(DEFAULT_CATEGORIES))
        self.assertEqual([row["id"] for row in mine], [row["id"] for row in theirs])
        self.assertTrue(all(row["is_default"] for row in mine))

    def test_custom_category_is_private(self) -> None:
        with self.engine.begin() as conn:
            created = create_category(conn, self.user_id, " Pets ", icon="paw")
            with self.assertRaises(NotFoundError):
                get_category(conn, self.other_user_id, created["id"])

        self.assertEqual(created["name"], "Pets")
        self.assertFalse(created["is_default"])

    def test_duplicate_names_are_case_insensitive(self) -> None:
        with self.engine.begin() as conn:
            create_category(conn, self.user_id, "Pets")
            with self.assertRaises(ValueError):
                create_category(conn, self.user_id, "pets")
            with self.assertRaises(ValueError):
                create_category(conn, self.user_id, DEFAULT_CATEGORIES[0][0].upper())
            create_category(conn, self.other_user_id, "Pets")

    def test_default_categories_are_read_only(self) -> None:
        with self.engine.begin() as conn:
            default_id = list_categories(conn, self.user_id)[0]["id"]
            with self.assertRaises(ValueError):
                update_category(conn, self.user_id, default_id, name="Renamed")
            with self.assertRaises(ValueError):
                delete_category(conn, self.user_id, default_id)

    def test_rename_keeps_own_name_available(self) -> None:
        with self.engine.begin() as conn:
            created = create_category(conn, self.user_id, "Pets")
            renamed = update_category(conn, self.user_id, created["id"], name="PETS", color="#ff0000")

        self.assertEqual(renamed["name"], "PETS")
        self.assertEqual(renamed["color"], "#ff0000")

    def test_category_in_use_cannot_be_deleted(self) -> None:
        with self.engine.begin() as conn:
            category = create_category(conn, self.user_id, "Pets")
            source = create_money_source(conn, self.user_id, "Cash", "USD", balance=Decimal("20"))
            create_expense(
                conn,
                self.user_id,
                amount=Decimal("5"),
                expense_date=date(2024, 1, 2),
                category_id=category["id"],
                money_source_id=source["id"],
            )
            with self.assertRaises(CategoryInUseError):
                delete_category(conn, self.user_id, category["id"])

    def test_unused_category_is_deleted(self) -> None:
        with self.engine.begin() as conn:
            category = create_category(conn, self.user_id, "Pets")
            delete_category(conn, self.user_id, category["id"])
            with self.assertRaises(NotFoundError):
                get_category(conn, self.user_id, category["id"])


if __name__ == "__main__":
    unittest.main()
