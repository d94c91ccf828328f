import datetime as dt
from contextlib import contextmanager
from datetime import date
from decimal import Decimal

import structlog
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from expense_tracker import (
    benchmarking,
    categories as category_rules,
    config,
    dashboard,
    data_transfer,
    expenses as expense_ledger,
    money_sources as source_ledger,
    settings_store,
)
from expense_tracker.ai_parsing import GeminiExpenseParser
from expense_tracker.currency_conversion import (
    OpenExchangeRatesProvider,
    get_rate,
    list_rates,
    refresh_exchange_rates,
)
from expense_tracker.database import build_engine
from expense_tracker.errors import (
    AIUnavailableError,
    CategoryInUseError,
    ExpenseParseError,
    NotFoundError,
)
from expense_tracker.logging_setup import configure_logging
from expense_tracker.rate_refresh import RateRefreshScheduler
from expense_tracker.tables import metadata, users

log = structlog.get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = build_engine(config.DATABASE_URL)

rate_provider = OpenExchangeRatesProvider(
    app_id=config.OPENEXCHANGERATES_APP_ID,
    base_url=config.OPENEXCHANGERATES_API_URL,
)
expense_parser = GeminiExpenseParser()
rate_scheduler: RateRefreshScheduler | None = None


@app.on_event("startup")
def init_app() -> None:
    global rate_scheduler
    configure_logging()
    metadata.create_all(engine)
    with engine.begin() as conn:
        category_rules.ensure_default_categories(conn)
    if config.RATE_REFRESH_ENABLED:
        rate_scheduler = RateRefreshScheduler(
            engine,
            rate_provider,
            interval_seconds=config.EXCHANGE_RATE_REFRESH_HOURS * 60 * 60,
        )
        rate_scheduler.start()


@app.on_event("shutdown")
def stop_app() -> None:
    if rate_scheduler is not None:
        rate_scheduler.stop()


class UserPayload(BaseModel):
    email: str
    name: str | None = None

    @classmethod
    def validate_payload(cls, payload: "UserPayload") -> "UserPayload":
        payload.email = payload.email.strip().lower()
        if not payload.email:
            raise ValueError("Email required.")
        if payload.name is not None:
            payload.name = payload.name.strip() or None
        return payload


class SettingsPayload(BaseModel):
    preferred_currency: str | None = None
    gemini_api_key: str | None = None


class CategoryPayload(BaseModel):
    name: str | None = None
    icon: str | None = None
    color: str | None = None


class MoneySourcePayload(BaseModel):
    name: str
    currency: str
    balance: Decimal = Decimal("0")
    budget: Decimal = Decimal("0")
    icon: str | None = None
    is_default: bool = False


class MoneySourceUpdatePayload(BaseModel):
    name: str | None = None
    currency: str | None = None
    balance: Decimal | None = None
    budget: Decimal | None = None
    icon: str | None = None
    is_default: bool | None = None


class AddFundsPayload(BaseModel):
    amount: Decimal


class ExpensePayload(BaseModel):
    amount: Decimal
    date: date
    category_id: int
    money_source_id: int
    notes: str | None = None


class ExpenseUpdatePayload(BaseModel):
    amount: Decimal | None = None
    date: dt.date | None = None
    category_id: int | None = None
    money_source_id: int | None = None
    notes: str | None = None


class BulkDeletePayload(BaseModel):
    ids: list[int]

    @classmethod
    def validate_payload(cls, payload: "BulkDeletePayload") -> "BulkDeletePayload":
        if not payload.ids:
            raise ValueError("At least one expense id is required.")
        return payload


class ExpenseTextPayload(BaseModel):
    text: str

    @classmethod
    def validate_payload(cls, payload: "ExpenseTextPayload") -> "ExpenseTextPayload":
        payload.text = payload.text.strip()
        if not payload.text:
            raise ValueError("Expense text required.")
        return payload


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


@contextmanager
def unit_of_work():
    """One transaction; domain errors become HTTP errors after rollback."""
    try:
        with engine.begin() as conn:
            yield conn
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CategoryInUseError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except AIUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ExpenseParseError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def validated(payload_cls, payload):
    try:
        return payload_cls.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/users")
def create_user(payload: UserPayload) -> dict:
    payload = validated(UserPayload, payload)
    try:
        with engine.begin() as conn:
            row = conn.execute(
                insert(users)
                .values(email=payload.email, name=payload.name)
                .returning(users.c.id, users.c.email, users.c.name, users.c.created_at)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc
    log.info("user_created", user_id=row["id"])
    return dict(row)


@app.get("/settings")
def read_settings(x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return settings_store.get_settings(conn, user_id)


@app.put("/settings")
def write_settings(
    payload: SettingsPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return settings_store.upsert_settings(
            conn,
            user_id,
            preferred_currency=payload.preferred_currency,
            gemini_api_key=payload.gemini_api_key,
        )


@app.get("/categories")
def list_categories(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[dict]:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return category_rules.list_categories(conn, user_id)


@app.get("/categories/{category_id}")
def get_category(category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return category_rules.get_category(conn, user_id, category_id)


@app.post("/categories")
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return category_rules.create_category(
            conn, user_id, payload.name, icon=payload.icon, color=payload.color
        )


@app.patch("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return category_rules.update_category(
            conn, user_id, category_id, name=payload.name, icon=payload.icon, color=payload.color
        )


@app.delete("/categories/{category_id}")
def delete_category(category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        category_rules.delete_category(conn, user_id, category_id)
    return {"status": "deleted"}


@app.get("/money-sources")
def list_money_sources(
    page: int = Query(1),
    page_size: int = Query(20),
    search: str | None = Query(None),
    sort_by: str = Query("updated_at"),
    sort_order: str = Query("desc"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return source_ledger.list_money_sources(
            conn,
            user_id,
            page=page,
            page_size=page_size,
            search=search,
            sort_by=sort_by,
            sort_order=sort_order,
        )


@app.get("/money-sources/{source_id}")
def get_money_source(source_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return source_ledger.get_money_source(conn, user_id, source_id)


@app.post("/money-sources")
def create_money_source(
    payload: MoneySourcePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        row = source_ledger.create_money_source(
            conn,
            user_id,
            name=payload.name,
            currency=payload.currency,
            balance=payload.balance,
            budget=payload.budget,
            icon=payload.icon,
            is_default=payload.is_default,
        )
        return source_ledger.get_money_source(conn, user_id, row["id"])


@app.patch("/money-sources/{source_id}")
def update_money_source(
    source_id: int,
    payload: MoneySourceUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        source_ledger.update_money_source(
            conn, user_id, source_id, payload.model_dump(exclude_unset=True)
        )
        return source_ledger.get_money_source(conn, user_id, source_id)


@app.post("/money-sources/{source_id}/add-funds")
def add_funds(
    source_id: int,
    payload: AddFundsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        result = source_ledger.add_funds(conn, user_id, source_id, payload.amount)
    return {
        "message": "Funds added successfully",
        "balance": result.balance,
        "reminder_for_budget": result.reminder_for_budget,
    }


@app.delete("/money-sources/{source_id}")
def delete_money_source(source_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        source_ledger.remove_money_source(conn, user_id, source_id)
    return {"status": "deleted"}


@app.get("/balance-history")
def list_balance_history(
    money_source_id: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[dict]:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return source_ledger.list_balance_history(conn, user_id, money_source_id=money_source_id)


@app.get("/balance-history/{history_id}")
def get_balance_history(history_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return source_ledger.get_balance_history(conn, user_id, history_id)


@app.get("/expenses")
def list_expenses(
    page: int = Query(1),
    page_size: int = Query(20),
    search: str | None = Query(None),
    category_id: int | None = Query(None),
    money_source_id: int | None = Query(None),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    sort_by: str = Query("updated_at"),
    sort_order: str = Query("desc"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return expense_ledger.list_expenses(
            conn,
            user_id,
            page=page,
            page_size=page_size,
            search=search,
            category_id=category_id,
            money_source_id=money_source_id,
            start_date=start_date,
            end_date=end_date,
            sort_by=sort_by,
            sort_order=sort_order,
        )


@app.get("/expenses/{expense_id}")
def get_expense(expense_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return expense_ledger.get_expense(conn, user_id, expense_id)


@app.post("/expenses")
def create_expense(
    payload: ExpensePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return expense_ledger.create_expense(
            conn,
            user_id,
            amount=payload.amount,
            expense_date=payload.date,
            category_id=payload.category_id,
            money_source_id=payload.money_source_id,
            notes=payload.notes,
        )


@app.post("/expenses/from-text")
def create_expense_from_text(
    payload: ExpenseTextPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    payload = validated(ExpenseTextPayload, payload)
    with unit_of_work() as conn:
        return expense_ledger.create_expense_from_text(conn, user_id, payload.text, expense_parser)


@app.post("/expenses/bulk-delete")
def bulk_delete_expenses(
    payload: BulkDeletePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    payload = validated(BulkDeletePayload, payload)
    with unit_of_work() as conn:
        deleted = expense_ledger.bulk_remove_expenses(conn, user_id, payload.ids)
    return {"deleted_count": deleted}


@app.patch("/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    payload: ExpenseUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return expense_ledger.update_expense(
            conn, user_id, expense_id, payload.model_dump(exclude_unset=True)
        )


@app.delete("/expenses/{expense_id}")
def delete_expense(expense_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        expense_ledger.remove_expense(conn, user_id, expense_id)
    return {"status": "deleted"}


@app.get("/dashboard/overview")
def dashboard_overview(x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return dashboard.get_overview(conn, user_id)


@app.get("/dashboard/trends")
def dashboard_trends(x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return dashboard.get_trends(conn, user_id, date.today())


@app.get("/dashboard/expense-composition")
def dashboard_expense_composition(x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return dashboard.get_expense_composition(conn, user_id)


@app.get("/dashboard/budget-comparison")
def dashboard_budget_comparison(x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return dashboard.get_budget_comparison(conn, user_id)


@app.get("/dashboard/expenses-overview")
def dashboard_expenses_overview(
    period: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return dashboard.get_expenses_overview(conn, user_id, date.today(), period=period)


@app.get("/dashboard/total-balance")
def dashboard_total_balance(
    period: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return dashboard.get_total_balance(conn, user_id, source_ledger.utcnow(), period=period)


@app.get("/benchmarking/spending-comparison")
def spending_comparison(
    months: int = Query(3),
    x_user_id: str | None = Header(None, alias="x-user-id"),
):
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return benchmarking.compare_spending_patterns(conn, user_id, date.today(), months=months)


@app.get("/exchange-rates")
def read_exchange_rates() -> list[dict]:
    with engine.begin() as conn:
        return list_rates(conn)


@app.get("/exchange-rates/{currency}")
def read_exchange_rate(currency: str) -> dict:
    try:
        with engine.begin() as conn:
            rate = get_rate(conn, currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if rate is None:
        raise HTTPException(status_code=404, detail=f"Exchange rate for {currency.upper()} not found.")
    return {"currency": currency.strip().upper(), "rate": rate}


@app.post("/exchange-rates/refresh")
def trigger_rate_refresh() -> dict:
    updated = refresh_exchange_rates(engine, rate_provider)
    return {"message": "Exchange rates update triggered", "updated": updated}


@app.get("/data/export")
def export_account(x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        return data_transfer.export_data(conn, user_id)


@app.post("/data/import")
def import_account(
    payload: data_transfer.ImportPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user_id = get_user_id(x_user_id)
    with unit_of_work() as conn:
        summary = data_transfer.import_data(conn, user_id, payload)
    return {"message": "Data imported successfully", "imported": summary}
