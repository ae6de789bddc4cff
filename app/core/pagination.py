"""Pagination helpers."""

import math
from typing import Generic, TypeVar

from pydantic import BaseModel, computed_field

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int

    @computed_field
    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


def paginate(page: int, page_size: int, max_page_size: int = 100) -> tuple[int, int]:
    """Clamp a 1-based page and its size; return (limit, offset)."""
    limit = max(1, min(page_size, max_page_size))
    offset = (max(1, page) - 1) * limit
    return limit, offset
