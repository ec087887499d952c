"""Stock request schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class StockRequestCreate(BaseModel):
    requester_clinic_id: int
    requested_from_clinic_id: int
    stock_id: int
    requested_quantity: Decimal = Field(..., gt=0)
    request_reason: str
    notes: Optional[str] = None
    requested_by: str = Field(..., min_length=1, max_length=200)


class StockRequestApprove(BaseModel):
    approved_quantity: Decimal = Field(..., gt=0)
    approved_by: str = Field(..., min_length=1, max_length=200)
    notes: Optional[str] = None


class StockRequestReject(BaseModel):
    rejection_reason: str
    rejected_by: str = Field(..., min_length=1, max_length=200)


class StockRequestComplete(BaseModel):
    performed_by: str = Field(..., min_length=1, max_length=200)


class StockRequestResponse(BaseModel):
    id: int
    requester_clinic_id: int
    requester_clinic_name: Optional[str] = None
    requested_from_clinic_id: int
    requested_from_clinic_name: Optional[str] = None
    stock_id: int
    stock_name: Optional[str] = None
    destination_stock_id: Optional[int] = None
    requested_quantity: Decimal
    approved_quantity: Optional[Decimal] = None
    status: str
    request_reason: str
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None
    requested_by: str
    requested_at: datetime
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    performed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class StockRequestStats(BaseModel):
    total: int
    pending: int
    approved: int
    rejected: int
    completed: int
