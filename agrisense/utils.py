from typing import Tuple
from pydantic import BaseModel
from math import ceil


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


def page_bounds(page: int, limit: int) -> Tuple[int, int]:
    """
    Returns (offset, limit) for a 1-based page number.
    """
    page = max(page, 1)
    limit = max(limit, 1)
    return (page - 1) * limit, limit


def paginate(page: int, limit: int, total: int) -> Pagination:
    """
    Builds the pagination block returned next to a page of items.
    """
    pages = ceil(total / limit) if limit > 0 and total > 0 else 1
    return Pagination(page=page, limit=limit, total=total, pages=pages)
