from __future__ import annotations

import structlog
from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.engine import Connection

from expense_tracker.errors import CategoryInUseError, NotFoundError
from expense_tracker.tables import categories, expenses

log = structlog.get_logger(__name__)

DEFAULT_CATEGORIES = [
    ("Food & Dining", "utensils"),
    ("Transportation", "car"),
    ("Housing", "home"),
    ("Utilities", "bolt"),
    ("Internet", "wifi"),
    ("Subscriptions", "repeat"),
    ("Entertainment", "film"),
    ("Shopping", "bag"),
    ("Health & Fitness", "heart"),
    ("Education", "graduation-cap"),
    ("Gifts & Donations", "gift"),
    ("Travel & Vacation", "plane"),
]

CATEGORY_COLUMNS = (
    categories.c.id,
    categories.c.user_id,
    categories.c.name,
    categories.c.icon,
    categories.c.color,
    categories.c.is_default,
    categories.c.created_at,
    categories.c.updated_at,
)


def visible_to(user_id: int):
    return or_(categories.c.is_default.is_(True), categories.c.user_id == user_id)


def ensure_default_categories(conn: Connection) -> None:
    existing = conn.execute(
        select(categories.c.id).where(categories.c.is_default.is_(True)).limit(1)
    ).first()
    if existing:
        return
    conn.execute(
        insert(categories),
        [
            {"user_id": None, "name": name, "icon": icon, "is_default": True}
            for name, icon in DEFAULT_CATEGORIES
        ],
    )


def list_categories(conn: Connection, user_id: int) -> list[dict]:
    rows = conn.execute(
        select(*CATEGORY_COLUMNS)
        .where(visible_to(user_id))
        .order_by(categories.c.is_default.desc(), categories.c.name.asc(), categories.c.id.asc())
    ).mappings().all()
    return [dict(row) for row in rows]


def get_category(conn: Connection, user_id: int, category_id: int) -> dict:
    row = conn.execute(
        select(*CATEGORY_COLUMNS).where(categories.c.id == category_id, visible_to(user_id))
    ).mappings().first()
    if not row:
        raise NotFoundError(f"Category with ID {category_id} not found.")
    return dict(row)


def name_taken(conn: Connection, user_id: int, name: str, exclude_id: int | None = None) -> bool:
    stmt = select(categories.c.id).where(
        visible_to(user_id),
        func.lower(categories.c.name) == name.lower(),
    )
    if exclude_id is not None:
        stmt = stmt.where(categories.c.id != exclude_id)
    return conn.execute(stmt.limit(1)).first() is not None


def category_in_use(conn: Connection, category_id: int) -> bool:
    match = conn.execute(
        select(expenses.c.id).where(expenses.c.category_id == category_id).limit(1)
    ).first()
    return bool(match)


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Category name required.")
    return cleaned


def create_category(
    conn: Connection,
    user_id: int,
    name: str,
    icon: str | None = None,
    color: str | None = None,
) -> dict:
    cleaned = _clean_name(name)
    if name_taken(conn, user_id, cleaned):
        raise ValueError("Category already exists.")
    row = conn.execute(
        insert(categories)
        .values(user_id=user_id, name=cleaned, icon=icon, color=color, is_default=False)
        .returning(*CATEGORY_COLUMNS)
    ).mappings().first()
    return dict(row)


def update_category(
    conn: Connection,
    user_id: int,
    category_id: int,
    name: str | None = None,
    icon: str | None = None,
    color: str | None = None,
) -> dict:
    current = get_category(conn, user_id, category_id)
    if current["is_default"]:
        raise ValueError("Default categories cannot be modified. Please create a new category instead.")

    values: dict = {"updated_at": func.now()}
    if name is not None:
        cleaned = _clean_name(name)
        if name_taken(conn, user_id, cleaned, exclude_id=category_id):
            raise ValueError("Category already exists.")
        values["name"] = cleaned
    if icon is not None:
        values["icon"] = icon
    if color is not None:
        values["color"] = color

    row = conn.execute(
        update(categories)
        .where(categories.c.id == category_id, categories.c.user_id == user_id)
        .values(**values)
        .returning(*CATEGORY_COLUMNS)
    ).mappings().first()
    return dict(row)


def delete_category(conn: Connection, user_id: int, category_id: int) -> None:
    current = get_category(conn, user_id, category_id)
    if current["is_default"]:
        log.warning("category_delete_rejected", category_id=category_id, reason="default")
        raise ValueError("Default categories cannot be deleted.")
    if category_in_use(conn, category_id):
        raise CategoryInUseError("Category is in use.")
    conn.execute(
        categories.delete().where(categories.c.id == category_id, categories.c.user_id == user_id)
    )
