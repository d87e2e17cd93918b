import math
from typing import Any, Dict, Optional, Tuple

import config


def page_params(page: Optional[Any] = None, limit: Optional[Any] = None) -> Tuple[int, int]:
    """Apply defaults for absent or invalid page/limit values."""
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = config.DEFAULT_PAGE
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = config.DEFAULT_LIMIT
    if page < 1:
        page = config.DEFAULT_PAGE
    if limit < 1:
        limit = config.DEFAULT_LIMIT
    return page, limit


def paginate(page: int, limit: int, total: int) -> Dict[str, int]:
    total_pages = math.ceil(total / limit)
    result = {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
    }
    if page < total_pages:
        result["nextPage"] = page + 1
    if page > 1:
        result["prevPage"] = page - 1
    return result
