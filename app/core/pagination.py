"""Page-based pagination helpers."""

import math
from typing import Any


def paginate(page: int, limit: int, max_limit: int = 100) -> tuple[int, int, int]:
    """Clamp page/limit; return (page, limit, skip)."""
    limit = max(1, min(limit, max_limit))
    page = max(1, page)
    return page, limit, (page - 1) * limit


def page_meta(page: int, limit: int, total: int) -> dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total": total,
        "limit": limit,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }
