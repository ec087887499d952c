"""Stock category registry."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medstock.db.base import Base, TimestampMixin

DEFAULT_COLOR = "#64748b"


class Category(Base, TimestampMixin):
    """Named grouping for stock items.

    Stock items refer to a category by name (``StockItem.category``), so
    items can carry a category before it is registered here. Registering it
    adds display metadata and makes renames apply to every item at once.
    """

    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    color: Mapped[str] = mapped_column(String(20), nullable=False, default=DEFAULT_COLOR)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
