"""Pagination helpers."""

import math


def paginate(limit: int, offset: int, max_limit: int = 200) -> tuple[int, int]:
    """Clamp limit/offset; return (limit, offset)."""
    limit = max(1, min(limit, max_limit))
    offset = max(0, offset)
    return limit, offset


def page_meta(page: int, limit: int, total: int) -> dict:
    """Page-number metadata for admin listings."""
    return {
        "current_page": page,
        "total_pages": math.ceil(total / limit) if limit else 0,
        "total": total,
        "has_next_page": page * limit < total,
        "has_prev_page": page > 1,
    }
