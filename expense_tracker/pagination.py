from __future__ import annotations

import math

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

MAX_PAGE_SIZE = 100


def normalize_page(page: int, page_size: int) -> tuple[int, int]:
    if page < 1:
        raise ValueError("Page must be at least 1.")
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValueError(f"Page size must be between 1 and {MAX_PAGE_SIZE}.")
    return page, page_size


def paginate(conn: Connection, stmt, page: int, page_size: int) -> tuple[list[dict], dict]:
    """Run ``stmt`` for one page and return its rows with the page metadata."""
    page, page_size = normalize_page(page, page_size)
    total_count = conn.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()
    rows = conn.execute(stmt.limit(page_size).offset((page - 1) * page_size)).mappings().all()
    meta = {
        "total_count": int(total_count),
        "total_pages": math.ceil(total_count / page_size) if total_count else 0,
        "page": page,
        "page_size": page_size,
    }
    return [dict(row) for row in rows], meta
