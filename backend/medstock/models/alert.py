"""Alert model and its type, severity and status vocabularies."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medstock.db.base import Base, TimestampMixin


class AlertType(str, Enum):
    LOW_STOCK = "low_stock"
    CRITICAL_STOCK = "critical_stock"
    OUT_OF_STOCK = "out_of_stock"
    EXPIRY_WARNING = "expiry_warning"
    EXPIRY_CRITICAL = "expiry_critical"
    EXPIRED = "expired"
    STOCK_REQUEST = "stock_request"
    STOCK_TRANSFER = "stock_transfer"
    SYSTEM = "system"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"  # Closed by a person
    DISMISSED = "dismissed"  # Closed by a person without action
    AUTO_RESOLVED = "auto_resolved"  # Closed by the engine when the condition cleared


# Types the engine derives from a stock item's level; everything else is
# raised by workflows or by hand
STOCK_CONDITION_TYPES = (
    AlertType.LOW_STOCK,
    AlertType.CRITICAL_STOCK,
    AlertType.OUT_OF_STOCK,
    AlertType.EXPIRY_WARNING,
    AlertType.EXPIRY_CRITICAL,
    AlertType.EXPIRED,
)

# Predicate of the partial unique index: only condition alerts are limited to
# one active row per item; workflow and manual alerts may repeat
ACTIVE_CONDITION_PREDICATE = "status = 'active' AND type IN ({})".format(
    ", ".join(f"'{t.value}'" for t in STOCK_CONDITION_TYPES)
)

SEVERITY_BY_TYPE = {
    AlertType.OUT_OF_STOCK: AlertSeverity.CRITICAL,
    AlertType.EXPIRED: AlertSeverity.CRITICAL,
    AlertType.CRITICAL_STOCK: AlertSeverity.HIGH,
    AlertType.EXPIRY_CRITICAL: AlertSeverity.HIGH,
    AlertType.LOW_STOCK: AlertSeverity.MEDIUM,
    AlertType.EXPIRY_WARNING: AlertSeverity.LOW,
    AlertType.STOCK_REQUEST: AlertSeverity.LOW,
    AlertType.STOCK_TRANSFER: AlertSeverity.LOW,
    AlertType.SYSTEM: AlertSeverity.MEDIUM,
}


class Alert(Base, TimestampMixin):
    """Persisted record of a triggering condition and its resolution."""

    __tablename__ = "alerts"
    __table_args__ = (
        # At most one active condition alert per (stock item, type)
        Index(
            "uq_alerts_active_stock_type",
            "stock_item_id",
            "type",
            unique=True,
            sqlite_where=text(ACTIVE_CONDITION_PREDICATE),
            postgresql_where=text(ACTIVE_CONDITION_PREDICATE),
        ),
        Index("ix_alerts_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    stock_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("stock_items.id", ondelete="CASCADE"), nullable=True, index=True
    )
    clinic_id: Mapped[Optional[int]] = mapped_column(ForeignKey("clinics.id"), nullable=True, index=True)
    stock_request_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("stock_requests.id", ondelete="SET NULL"), nullable=True, index=True
    )

    type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default=AlertSeverity.MEDIUM.value)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AlertStatus.ACTIVE.value)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Snapshot taken when the alert was raised
    current_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    threshold_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    days_until_expiry: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Closing
    resolved_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dismissed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set when the item is next seen back at normal after a person closed
    # this alert; from then on the same condition may be raised again
    cleared_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    stock_item: Mapped[Optional["StockItem"]] = relationship("StockItem")
    clinic: Mapped[Optional["Clinic"]] = relationship("Clinic")

    @property
    def is_resolved(self) -> bool:
        return self.status != AlertStatus.ACTIVE.value

    @property
    def stock_name(self) -> Optional[str]:
        return self.stock_item.name if self.stock_item else None


# Forward references
from medstock.models.clinic import Clinic
from medstock.models.stock import StockItem
