"""Alert schemas."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from medstock.models.alert import AlertSeverity, AlertType


class AlertCreate(BaseModel):
    """Manually raised alert. Severity defaults from the alert type."""

    type: AlertType = AlertType.SYSTEM
    severity: Optional[AlertSeverity] = None
    title: str = Field(..., min_length=1, max_length=255)
    message: Optional[str] = None
    stock_item_id: Optional[int] = None
    clinic_id: Optional[int] = None
    stock_request_id: Optional[int] = None
    current_value: Optional[Decimal] = None
    threshold_value: Optional[Decimal] = None


class AlertResponse(BaseModel):
    id: int
    type: str
    severity: str
    status: str
    title: str
    message: Optional[str] = None
    stock_item_id: Optional[int] = None
    stock_name: Optional[str] = None
    clinic_id: Optional[int] = None
    stock_request_id: Optional[int] = None
    current_value: Optional[Decimal] = None
    threshold_value: Optional[Decimal] = None
    expiry_date: Optional[date] = None
    days_until_expiry: Optional[int] = None
    is_resolved: bool
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AlertResolveRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1, max_length=200)
    notes: Optional[str] = None


class AlertDismissRequest(BaseModel):
    dismissed_by: Optional[str] = Field(None, max_length=200)
    notes: Optional[str] = None


class BulkResolveRequest(BaseModel):
    ids: List[int] = Field(..., min_length=1)
    resolved_by: str = Field(..., min_length=1, max_length=200)
    notes: Optional[str] = None


class BulkIdsRequest(BaseModel):
    ids: List[int] = Field(..., min_length=1)
    dismissed_by: Optional[str] = Field(None, max_length=200)


class BulkFailure(BaseModel):
    id: int
    code: str
    detail: str


class BulkResult(BaseModel):
    """Per-id outcome of a bulk action; failures do not roll back successes."""

    succeeded: List[int]
    failed: List[BulkFailure]


class AlertStats(BaseModel):
    total: int
    active: int
    resolved: int
    dismissed: int
    auto_resolved: int
    by_severity: Dict[str, int]
    by_type: Dict[str, int]


class PendingCount(BaseModel):
    count: int


class ReconcileResult(BaseModel):
    stock_id: int
    level: str
    created: List[int]
    auto_resolved: List[int]


class SweepResult(BaseModel):
    checked: int
    created: int
    auto_resolved: int
