from __future__ import annotations

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection

from expense_tracker import config
from expense_tracker.config import normalize_currency
from expense_tracker.errors import NotFoundError
from expense_tracker.tables import app_settings, users


def ensure_user(conn: Connection, user_id: int) -> None:
    exists = conn.execute(select(users.c.id).where(users.c.id == user_id)).first()
    if not exists:
        raise NotFoundError("User not found.")


def get_settings(conn: Connection, user_id: int) -> dict:
    row = conn.execute(
        select(app_settings.c.preferred_currency, app_settings.c.gemini_api_key).where(
            app_settings.c.user_id == user_id
        )
    ).mappings().first()
    return {
        "preferred_currency": get_preferred_currency(conn, user_id),
        "ai_enabled": bool(row and row["gemini_api_key"]),
    }


def get_preferred_currency(conn: Connection, user_id: int) -> str:
    stored = conn.execute(
        select(app_settings.c.preferred_currency).where(app_settings.c.user_id == user_id)
    ).scalar_one_or_none()
    if stored:
        try:
            return normalize_currency(stored)
        except ValueError:
            pass
    return config.DEFAULT_CURRENCY


def get_gemini_api_key(conn: Connection, user_id: int) -> str | None:
    return conn.execute(
        select(app_settings.c.gemini_api_key).where(app_settings.c.user_id == user_id)
    ).scalar_one_or_none()


def upsert_settings(
    conn: Connection,
    user_id: int,
    preferred_currency: str | None = None,
    gemini_api_key: str | None = None,
) -> dict:
    ensure_user(conn, user_id)
    values: dict = {}
    if preferred_currency is not None:
        values["preferred_currency"] = normalize_currency(preferred_currency)
    if gemini_api_key is not None:
        values["gemini_api_key"] = gemini_api_key.strip() or None

    existing = conn.execute(
        select(app_settings.c.id).where(app_settings.c.user_id == user_id)
    ).first()
    if existing:
        if values:
            conn.execute(
                update(app_settings)
                .where(app_settings.c.user_id == user_id)
                .values(updated_at=func.now(), **values)
            )
    else:
        conn.execute(insert(app_settings).values(user_id=user_id, **values))
    return get_settings(conn, user_id)
