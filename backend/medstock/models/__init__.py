"""SQLAlchemy models."""

from medstock.models.clinic import Clinic
from medstock.models.supplier import Supplier
from medstock.models.category import Category
from medstock.models.stock import StockItem, LedgerOperation, OperationKind, HISTORY_KINDS
from medstock.models.stock_request import StockRequest, StockRequestStatus, ALLOWED_TRANSITIONS
from medstock.models.alert import (
    Alert,
    AlertType,
    AlertSeverity,
    AlertStatus,
    STOCK_CONDITION_TYPES,
    SEVERITY_BY_TYPE,
)

__all__ = [
    "Clinic",
    "Supplier",
    "Category",
    "StockItem",
    "LedgerOperation",
    "OperationKind",
    "HISTORY_KINDS",
    "StockRequest",
    "StockRequestStatus",
    "ALLOWED_TRANSITIONS",
    "Alert",
    "AlertType",
    "AlertSeverity",
    "AlertStatus",
    "STOCK_CONDITION_TYPES",
    "SEVERITY_BY_TYPE",
]
