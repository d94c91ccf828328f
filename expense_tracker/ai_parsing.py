"""Gemini-backed helpers: free-text expense parsing and benchmark narratives.

The LLM only translates text into structured fields. Anything it returns is
checked against the user's own categories and money sources before use, and
failures surface as ``ExpenseParseError`` without touching the ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import json
import re

import google.generativeai as genai
from google.api_core.exceptions import GoogleAPIError
import structlog
from sqlalchemy import select
from sqlalchemy.engine import Connection

from expense_tracker import config
from expense_tracker.categories import visible_to
from expense_tracker.errors import AIUnavailableError, ExpenseParseError
from expense_tracker.settings_store import get_gemini_api_key
from expense_tracker.tables import categories, money_sources

log = structlog.get_logger(__name__)

CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
INSIGHTS_FALLBACK = "Unable to generate spending insights at this time. Please try again later."


@dataclass(frozen=True)
class ParsedExpense:
    amount: Decimal | None
    date: date
    category_id: int | None
    money_source_id: int | None
    notes: str | None = None


def default_model_factory(api_key: str, generation_config: dict):
    genai.configure(api_key=api_key)
    return genai.GenerativeModel(model_name=config.GEMINI_MODEL, generation_config=generation_config)


def _response_text(response) -> str:
    try:
        text = response.text
    except ValueError as exc:
        # Blocked or empty candidates raise on .text
        raise ExpenseParseError("AI response did not return any text") from exc
    if not text or not text.strip():
        raise ExpenseParseError("AI response did not return any text")
    return text.strip()


def strip_code_fence(text: str) -> str:
    match = CODE_FENCE.match(text.strip())
    return match.group(1).strip() if match else text.strip()


def parse_date(value, today: date) -> date:
    if not value:
        return today
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        log.warning("ai_date_unparsed", value=value)
        return today


def _coerce_id(value) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_amount(value) -> Decimal | None:
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    return amount if amount > 0 else None


class GeminiExpenseParser:
    """Turns "coffee 4.50 yesterday with card" into a ``ParsedExpense``.

    Called as ``parser(conn, user_id, text)`` by the expense ledger.
    """

    def __init__(self, model_factory=default_model_factory, today=None) -> None:
        self._model_factory = model_factory
        self._today = today or date.today

    def __call__(self, conn: Connection, user_id: int, text: str) -> ParsedExpense:
        api_key = get_gemini_api_key(conn, user_id)
        if not api_key:
            log.warning("ai_key_missing", user_id=user_id)
            raise AIUnavailableError(
                "AI features are not available. Please set your Gemini API key in your account settings."
            )

        category_rows = conn.execute(
            select(categories.c.id, categories.c.name)
            .where(visible_to(user_id))
            .order_by(categories.c.created_at.asc(), categories.c.id.asc())
        ).mappings().all()
        source_rows = conn.execute(
            select(money_sources.c.id, money_sources.c.name, money_sources.c.is_default)
            .where(money_sources.c.user_id == user_id)
            .order_by(money_sources.c.created_at.asc(), money_sources.c.id.asc())
        ).mappings().all()
        return self.parse_expense(api_key, text, list(category_rows), list(source_rows))

    def parse_expense(self, api_key: str, text: str, category_rows: list, source_rows: list) -> ParsedExpense:
        today = self._today()
        category_info = ", ".join(f"{row['name']} (id: {row['id']})" for row in category_rows)
        source_info = ", ".join(f"{row['name']} (id: {row['id']})" for row in source_rows)
        prompt = (
            f'Parse this expense description: "{text}"\n\n'
            f"Today's date is {today.isoformat()}.\n"
            "Translate the description to English first; notes must be in English.\n"
            f"Available categories: {category_info}\n"
            f"Available money sources: {source_info}\n\n"
            "Return only a JSON object: "
            '{"amount": number, "date": "YYYY-MM-DD", "categoryId": number, '
            '"moneySourceId": number, "notes": "string"}. '
            "Resolve relative dates against today and use null for missing fields."
        )

        model = self._model_factory(api_key, {"temperature": 0.1, "max_output_tokens": 1000})
        try:
            response = model.generate_content(prompt)
        except GoogleAPIError as exc:
            log.error("ai_parse_request_failed", error=str(exc))
            raise ExpenseParseError(f"AI request failed: {exc}") from exc

        body = strip_code_fence(_response_text(response))
        try:
            data = json.loads(body)
        except json.JSONDecodeError as exc:
            log.error("ai_parse_invalid_json", response=body[:200])
            raise ExpenseParseError("Failed to parse AI response: Invalid JSON format") from exc
        if not isinstance(data, dict):
            raise ExpenseParseError("Failed to parse AI response: expected an object")

        source_ids = {row["id"] for row in source_rows}
        money_source_id = _coerce_id(data.get("moneySourceId"))
        if money_source_id not in source_ids:
            default_source = next((row for row in source_rows if row["is_default"]), None)
            fallback = default_source or (source_rows[0] if source_rows else None)
            money_source_id = fallback["id"] if fallback else None

        notes = data.get("notes") or None
        category_id = _coerce_id(data.get("categoryId"))
        if category_id not in {row["id"] for row in category_rows}:
            category_id = self._suggest_category(model, notes or text, category_rows, category_info)

        return ParsedExpense(
            amount=_coerce_amount(data.get("amount")),
            date=parse_date(data.get("date"), today),
            category_id=category_id,
            money_source_id=money_source_id,
            notes=notes,
        )

    def _suggest_category(self, model, description: str, category_rows: list, category_info: str) -> int | None:
        if not category_rows:
            return None
        prompt = (
            f'Based on this expense description: "{description}", which of these categories '
            f"would it likely belong to? Respond only with the category ID.\n"
            f"Available categories: {category_info}"
        )
        suggestion = ""
        try:
            suggestion = _response_text(model.generate_content(prompt))
        except (GoogleAPIError, ExpenseParseError) as exc:
            log.warning("ai_category_suggestion_failed", error=str(exc))

        suggested_id = _coerce_id(suggestion)
        for row in category_rows:
            if row["id"] == suggested_id or row["name"].lower() == suggestion.lower():
                return row["id"]
        return category_rows[0]["id"]


def generate_benchmark_insights(api_key: str | None, summary: dict, model_factory=default_model_factory) -> str:
    """Return a narrative for a spending comparison; never raises."""
    if not api_key:
        return (
            "AI-powered insights unavailable: AI features are not available. "
            "Please set your Gemini API key in your account settings."
        )
    prompt = (
        "You are a financial advisor mixing serious advice with light humour. "
        f"Over the last few months the user spent {summary['user_monthly_spending']} {summary['currency']} "
        f"per month, the average user spent {summary['average_monthly_spending']} {summary['currency']}, "
        f"a {summary['overall_difference_percentage']}% difference across "
        f"{summary['comparison_user_count']} other users. "
        f"Category breakdown: {json.dumps(summary['category_comparisons'], default=str)}. "
        "Write a short bullet-point analysis with a headline, overspending areas, areas of restraint "
        "and practical advice."
    )
    try:
        model = model_factory(api_key, {"temperature": 0.8, "max_output_tokens": 2000})
        response = model.generate_content(prompt)
        return _response_text(response)
    except (GoogleAPIError, ExpenseParseError) as exc:
        log.error("ai_insights_failed", error=str(exc))
        return INSIGHTS_FALLBACK
