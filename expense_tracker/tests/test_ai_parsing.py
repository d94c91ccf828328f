import json
import unittest
from datetime import date
from decimal import Decimal

from google.api_core.exceptions import ServiceUnavailable

from expense_tracker.ai_parsing import (
    INSIGHTS_FALLBACK,
    GeminiExpenseParser,
    generate_benchmark_insights,
    parse_date,
    strip_code_fence,
)
from expense_tracker.errors import AIUnavailableError, ExpenseParseError
from expense_tracker.money_sources import create_money_source
from expense_tracker.settings_store import upsert_settings
from expense_tracker.tests.support import add_user, make_engine

TODAY = date(2024, 6, 15)

CATEGORIES = [{"id": 1, "name": "Food & Dining"}, {"id": 2, "name": "Transportation"}]
SOURCES = [
    {"id": 10, "name": "Cash", "is_default": False},
    {"id": 11, "name": "Card", "is_default": True},
]


class FakeResponse:
    def __init__(self, text) -> None:
        self._text = text

    @property
    def text(self):
        if isinstance(self._text, Exception):
            raise self._text
        return self._text


class FakeModel:
    def __init__(self, replies) -> None:
        self.replies = list(replies)
        self.prompts = []

    def generate_content(self, prompt):
        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, ServiceUnavailable):
            raise reply
        return FakeResponse(reply)


def factory_for(model):
    def factory(api_key, generation_config):
        model.api_key = api_key
        return model

    return factory


class GeminiExpenseParserTests(unittest.TestCase):
    def parse(self, *replies, text="lunch 12.5 with card"):
        model = FakeModel(replies)
        parser = GeminiExpenseParser(model_factory=factory_for(model), today=lambda: TODAY)
        return parser.parse_expense("key", text, CATEGORIES, SOURCES), model

    def test_parses_fenced_json(self) -> None:
        body = json.dumps(
            {"amount": 12.5, "date": "2024-06-14", "categoryId": 1, "moneySourceId": 10, "notes": "Lunch"}
        )
        parsed, model = self.parse(f"```json\n{body}\n```")

        self.assertEqual(parsed.amount, Decimal("12.5"))
        self.assertEqual(parsed.date, date(2024, 6, 14))
        self.assertEqual(parsed.category_id, 1)
        self.assertEqual(parsed.money_source_id, 10)
        self.assertEqual(parsed.notes, "Lunch")
        self.assertEqual(len(model.prompts), 1)
        self.assertIn("2024-06-15", model.prompts[0])

    def test_unknown_source_falls_back_to_default(self) -> None:
        body = json.dumps({"amount": 3, "date": None, "categoryId": 2, "moneySourceId": 99})
        parsed, _ = self.parse(body)

        self.assertEqual(parsed.money_source_id, 11)
        self.assertEqual(parsed.date, TODAY)

    def test_unknown_category_uses_suggestion_then_first(self) -> None:
        body = json.dumps({"amount": 3, "categoryId": None, "moneySourceId": 10, "notes": "bus"})
        suggested, model = self.parse(body, "transportation")
        fallback, _ = self.parse(body, "no idea")

        self.assertEqual(suggested.category_id, 2)
        self.assertIn('"bus"', model.prompts[1])
        self.assertEqual(fallback.category_id, 1)

    def test_invalid_json_raises_parse_error(self) -> None:
        with self.assertRaises(ExpenseParseError):
            self.parse("I think it was lunch")

    def test_blocked_response_raises_parse_error(self) -> None:
        with self.assertRaises(ExpenseParseError):
            self.parse(ValueError("response was blocked"))

    def test_api_failure_raises_parse_error(self) -> None:
        with self.assertRaises(ExpenseParseError):
            self.parse(ServiceUnavailable("overloaded"))

    def test_non_positive_amount_is_dropped(self) -> None:
        body = json.dumps({"amount": -4, "categoryId": 1, "moneySourceId": 10})
        parsed, _ = self.parse(body)

        self.assertIsNone(parsed.amount)


class GeminiExpenseParserStorageTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        with self.engine.begin() as conn:
            self.user_id = add_user(conn, "owner@example.com")
            self.source_id = create_money_source(conn, self.user_id, "Cash", "USD")["id"]

    def test_missing_key_is_unavailable(self) -> None:
        parser = GeminiExpenseParser(model_factory=factory_for(FakeModel([])), today=lambda: TODAY)
        with self.engine.begin() as conn:
            with self.assertRaises(AIUnavailableError):
                parser(conn, self.user_id, "coffee 3")

    def test_uses_stored_key_and_own_sources(self) -> None:
        model = FakeModel([json.dumps({"amount": 3, "categoryId": None, "moneySourceId": None}), "1"])
        parser = GeminiExpenseParser(model_factory=factory_for(model), today=lambda: TODAY)
        with self.engine.begin() as conn:
            upsert_settings(conn, self.user_id, gemini_api_key="secret")
            parsed = parser(conn, self.user_id, "coffee 3")

        self.assertEqual(model.api_key, "secret")
        self.assertEqual(parsed.money_source_id, self.source_id)
        self.assertIsNotNone(parsed.category_id)


class HelperTests(unittest.TestCase):
    def test_strip_code_fence_leaves_plain_text(self) -> None:
        self.assertEqual(strip_code_fence('  {"a": 1} '), '{"a": 1}')
        self.assertEqual(strip_code_fence('```\n{"a": 1}\n```'), '{"a": 1}')

    def test_parse_date_falls_back_to_today(self) -> None:
        self.assertEqual(parse_date("yesterday", TODAY), TODAY)
        self.assertEqual(parse_date("2024-01-02T10:00:00", TODAY), date(2024, 1, 2))


class BenchmarkInsightsTests(unittest.TestCase):
    summary = {
        "user_monthly_spending": Decimal("100.00"),
        "average_monthly_spending": Decimal("50.00"),
        "overall_difference_percentage": Decimal("100.0"),
        "comparison_user_count": 3,
        "currency": "USD",
        "category_comparisons": [],
    }

    def test_without_key_explains_unavailability(self) -> None:
        text = generate_benchmark_insights(None, self.summary)

        self.assertIn("Gemini API key", text)

    def test_failure_returns_fallback_text(self) -> None:
        model = FakeModel([ServiceUnavailable("overloaded")])

        self.assertEqual(
            generate_benchmark_insights("key", self.summary, model_factory=factory_for(model)),
            INSIGHTS_FALLBACK,
        )

    def test_returns_model_text(self) -> None:
        model = FakeModel(["- You spend twice the average."])

        text = generate_benchmark_insights("key", self.summary, model_factory=factory_for(model))

        self.assertEqual(text, "- You spend twice the average.")
        self.assertIn("100.00 USD", model.prompts[0])


if __name__ == "__main__":
    unittest.main()
