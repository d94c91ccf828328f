"""Shared fixtures for tests that need a database."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import event, insert
from sqlalchemy.pool import StaticPool

from expense_tracker.categories import ensure_default_categories
from expense_tracker.currency_conversion import upsert_rate
from expense_tracker.database import build_engine
from expense_tracker.tables import metadata, users

RATES = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.5"),
    "ETB": Decimal("55"),
}
RATES_AT = datetime(2024, 1, 1, 12, 0, 0)


def make_engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    metadata.create_all(engine)
    with engine.begin() as conn:
        ensure_default_categories(conn)
    return engine


def add_user(conn, email: str, name: str | None = None) -> int:
    return conn.execute(
        insert(users).values(email=email, name=name).returning(users.c.id)
    ).scalar_one()


def seed_rates(conn, rates=None) -> None:
    for code, rate in (rates or RATES).items():
        upsert_rate(conn, code, rate, "USD", RATES_AT)


class StatementRecorder:
    """Collects SQL statements executed on an engine while attached."""

    def __init__(self, engine) -> None:
        self.engine = engine
        self.statements: list[str] = []

    def _record(self, conn, cursor, statement, parameters, context, executemany):
        self.statements.append(statement)

    def __enter__(self) -> "StatementRecorder":
        event.listen(self.engine, "before_cursor_execute", self._record)
        return self

    def __exit__(self, *exc_info) -> None:
        event.remove(self.engine, "before_cursor_execute", self._record)

    def matching(self, prefix: str, table: str) -> list[str]:
        return [
            statement
            for statement in self.statements
            if statement.lstrip().upper().startswith(prefix) and table in statement
        ]
