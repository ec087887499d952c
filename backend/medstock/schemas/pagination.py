"""Paginated list envelope shared by every list endpoint."""

from typing import Generic, List, Tuple, TypeVar

from pydantic import BaseModel, Field
from sqlalchemy.orm import Query

T = TypeVar("T")

DEFAULT_LIMIT = 50
MAX_LIMIT = 500


class Page(BaseModel, Generic[T]):
    """``{items, total, skip, limit, has_more}``."""

    items: List[T]
    total: int = Field(description="Total number of rows matching the filters")
    skip: int
    limit: int
    has_more: bool

    @classmethod
    def build(cls, items: List[T], total: int, skip: int, limit: int) -> "Page[T]":
        return cls(items=items, total=total, skip=skip, limit=limit, has_more=(skip + len(items)) < total)


def paginate(query: Query, skip: int = 0, limit: int = DEFAULT_LIMIT) -> Tuple[list, int]:
    """Return one page of ``query`` and the unpaginated row count."""
    total = query.order_by(None).count()
    return query.offset(skip).limit(limit).all(), total
