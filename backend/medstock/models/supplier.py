"""Supplier model."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import JSON, Boolean, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medstock.db.base import Base, TimestampMixin


class Supplier(Base, TimestampMixin):
    """Supplier of medical stock."""

    __tablename__ = "suppliers"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    contact_person: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    tax_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # delivery_time, discount_rate, payment_terms, ...
    additional_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Relationships
    stock_items: Mapped[list["StockItem"]] = relationship("StockItem", back_populates="supplier")


# Forward references
from medstock.models.stock import StockItem
