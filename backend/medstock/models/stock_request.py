"""Inter-clinic stock transfer request."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medstock.db.base import Base, TimestampMixin


class StockRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


# Legal moves of the request state machine; rejected and completed are terminal
ALLOWED_TRANSITIONS = {
    StockRequestStatus.PENDING: {StockRequestStatus.APPROVED, StockRequestStatus.REJECTED},
    StockRequestStatus.APPROVED: {StockRequestStatus.COMPLETED},
    StockRequestStatus.REJECTED: set(),
    StockRequestStatus.COMPLETED: set(),
}


class StockRequest(Base, TimestampMixin):
    """A clinic asking another clinic for part of one of its stock items."""

    __tablename__ = "stock_requests"
    __table_args__ = (
        CheckConstraint("requester_clinic_id <> requested_from_clinic_id", name="distinct_clinics"),
        CheckConstraint("requested_quantity > 0", name="positive_quantity"),
        CheckConstraint(
            "approved_quantity IS NULL OR (approved_quantity > 0 AND approved_quantity <= requested_quantity)",
            name="approved_within_requested",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    requester_clinic_id: Mapped[int] = mapped_column(ForeignKey("clinics.id"), nullable=False, index=True)
    requested_from_clinic_id: Mapped[int] = mapped_column(ForeignKey("clinics.id"), nullable=False, index=True)
    stock_id: Mapped[int] = mapped_column(ForeignKey("stock_items.id"), nullable=False, index=True)
    destination_stock_id: Mapped[Optional[int]] = mapped_column(ForeignKey("stock_items.id"), nullable=True)

    requested_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    approved_quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StockRequestStatus.PENDING.value, index=True
    )
    request_reason: Mapped[str] = mapped_column(Text, nullable=False)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Actors and transition times
    requested_by: Mapped[str] = mapped_column(String(200), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approved_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    performed_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    requester_clinic: Mapped["Clinic"] = relationship("Clinic", foreign_keys=[requester_clinic_id])
    requested_from_clinic: Mapped["Clinic"] = relationship("Clinic", foreign_keys=[requested_from_clinic_id])
    stock: Mapped["StockItem"] = relationship("StockItem", foreign_keys=[stock_id])
    destination_stock: Mapped[Optional["StockItem"]] = relationship("StockItem", foreign_keys=[destination_stock_id])

    def can_transition_to(self, target: StockRequestStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[StockRequestStatus(self.status)]

    @property
    def stock_name(self) -> Optional[str]:
        return self.stock.name if self.stock else None

    @property
    def requester_clinic_name(self) -> Optional[str]:
        return self.requester_clinic.name if self.requester_clinic else None

    @property
    def requested_from_clinic_name(self) -> Optional[str]:
        return self.requested_from_clinic.name if self.requested_from_clinic else None


# Forward references
from medstock.models.clinic import Clinic
from medstock.models.stock import StockItem
