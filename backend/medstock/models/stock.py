"""Stock models: StockItem and its append-only LedgerOperation trail."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, CheckConstraint, Date, DateTime, ForeignKey, Integer, Numeric, String, Text,
    UniqueConstraint, event, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medstock.core.exceptions import InvalidStateError
from medstock.db.base import Base, TimestampMixin


class OperationKind(str, Enum):
    """Kinds of ledger mutation. The sign of ``delta`` is fixed per kind."""

    ADJUSTMENT_INCREASE = "adjustment_increase"  # Manual correction upwards, initial stock
    ADJUSTMENT_DECREASE = "adjustment_decrease"  # Manual correction downwards
    USAGE = "usage"  # Consumed by the clinic
    TRANSFER_OUT = "transfer_out"  # Sent to another clinic
    TRANSFER_IN = "transfer_in"  # Received from another clinic


# Kinds whose presence means the item has real movement history
HISTORY_KINDS = (OperationKind.USAGE, OperationKind.TRANSFER_OUT, OperationKind.TRANSFER_IN)


class StockItem(Base, TimestampMixin):
    """One clinic's holding of a catalog item.

    ``current_stock`` is only ever written by the stock ledger. The
    ``version`` column is the mapper's version counter, so every UPDATE is a
    compare-and-swap and a concurrent writer raises StaleDataError.
    """

    __tablename__ = "stock_items"
    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="non_negative"),
        CheckConstraint("min_stock_level >= 0 AND critical_stock_level >= 0", name="thresholds_non_negative"),
        UniqueConstraint("clinic_id", "name", "unit", name="uq_stock_items_clinic_name_unit"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    clinic_id: Mapped[int] = mapped_column(ForeignKey("clinics.id"), nullable=False, index=True)
    supplier_id: Mapped[Optional[int]] = mapped_column(ForeignKey("suppliers.id"), nullable=True, index=True)

    # Catalog attributes
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="General", index=True)
    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="pcs")  # pcs, box, ml, vial
    storage_location: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    purchase_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="TRY", nullable=False)
    purchase_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True, index=True)
    track_expiry: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    track_batch: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Quantity and thresholds
    current_stock: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    min_stock_level: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    critical_stock_level: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    internal_usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    clinic: Mapped["Clinic"] = relationship("Clinic", back_populates="stock_items")
    supplier: Mapped[Optional["Supplier"]] = relationship("Supplier", back_populates="stock_items")
    operations: Mapped[list["LedgerOperation"]] = relationship(
        "LedgerOperation",
        back_populates="stock_item",
        order_by="LedgerOperation.id",
        passive_deletes=True,
    )

    @property
    def level(self) -> str:
        """Current threshold classification (normal, low, critical, ...)."""
        from medstock.services.threshold_classifier import classify

        return classify(self).value

    @property
    def days_until_expiry(self) -> Optional[int]:
        from medstock.services.threshold_classifier import days_until_expiry

        return days_until_expiry(self.expiry_date)

    @property
    def status(self) -> str:
        return "active" if self.is_active else "inactive"

    @property
    def stock_value(self) -> Decimal:
        return (self.current_stock or Decimal("0")) * (self.purchase_price or Decimal("0"))


class LedgerOperation(Base):
    """Append-only audit row; exactly one per change of ``current_stock``."""

    __tablename__ = "ledger_operations"

    id: Mapped[int] = mapped_column(primary_key=True)
    stock_item_id: Mapped[int] = mapped_column(
        ForeignKey("stock_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    delta: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity_before: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity_after: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    used_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    performed_by: Mapped[str] = mapped_column(String(200), nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # stock_request
    reference_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    # Relationships
    stock_item: Mapped["StockItem"] = relationship("StockItem", back_populates="operations")


@event.listens_for(LedgerOperation, "before_update")
def _reject_ledger_rewrite(mapper, connection, target: LedgerOperation) -> None:
    raise InvalidStateError(f"Ledger operation {target.id} is immutable")


# Forward references
from medstock.models.clinic import Clinic
from medstock.models.supplier import Supplier
