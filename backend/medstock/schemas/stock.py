"""Stock schemas."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class StockBase(BaseModel):
    """Catalog attributes shared by create and response."""

    name: str = Field(..., min_length=1, max_length=255)
    code: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = None
    brand: Optional[str] = Field(None, max_length=100)
    category: str = Field("General", max_length=100)
    unit: str = Field("pcs", min_length=1, max_length=20)
    storage_location: Optional[str] = Field(None, max_length=200)
    purchase_price: Decimal = Field(Decimal("0"), ge=0)
    currency: str = Field("TRY", min_length=3, max_length=3)
    purchase_date: Optional[date] = None
    expiry_date: Optional[date] = None
    track_expiry: bool = False
    track_batch: bool = False
    min_stock_level: Decimal = Field(Decimal("0"), ge=0)
    critical_stock_level: Decimal = Field(Decimal("0"), ge=0)
    supplier_id: Optional[int] = None


class StockCreate(StockBase):
    """New stock item. A positive initial quantity is booked through the ledger."""

    clinic_id: int
    current_stock: Decimal = Field(Decimal("0"), ge=0)
    performed_by: str = Field("system", min_length=1, max_length=200)


class StockUpdate(BaseModel):
    """Catalog edit. Quantity is not editable here; use adjust or use."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    code: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = None
    brand: Optional[str] = Field(None, max_length=100)
    category: Optional[str] = Field(None, max_length=100)
    unit: Optional[str] = Field(None, min_length=1, max_length=20)
    storage_location: Optional[str] = Field(None, max_length=200)
    purchase_price: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    purchase_date: Optional[date] = None
    expiry_date: Optional[date] = None
    track_expiry: Optional[bool] = None
    track_batch: Optional[bool] = None
    min_stock_level: Optional[Decimal] = Field(None, ge=0)
    critical_stock_level: Optional[Decimal] = Field(None, ge=0)
    supplier_id: Optional[int] = None


class StockResponse(StockBase):
    id: int
    clinic_id: int
    current_stock: Decimal
    internal_usage_count: int
    is_active: bool
    status: str
    level: str
    days_until_expiry: Optional[int] = None
    stock_value: Decimal
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class StockAdjustRequest(BaseModel):
    """Manual correction of the quantity in either direction."""

    type: Literal["increase", "decrease"]
    quantity: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = None
    performed_by: str = Field(..., min_length=1, max_length=200)


class StockUseRequest(BaseModel):
    """Internal consumption of stock."""

    quantity: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = None
    used_by: Optional[str] = Field(None, max_length=200)
    performed_by: str = Field(..., min_length=1, max_length=200)


class LedgerOperationResponse(BaseModel):
    id: int
    stock_item_id: int
    kind: str
    delta: Decimal
    quantity_before: Decimal
    quantity_after: Decimal
    reason: str
    notes: Optional[str] = None
    used_by: Optional[str] = None
    performed_by: str
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class StockStats(BaseModel):
    total_items: int
    low_stock_items: int
    critical_stock_items: int
    out_of_stock_items: int
    expiring_items: int
    expired_items: int
    total_value: Decimal


class StockDeleteResponse(BaseModel):
    """Outcome of a delete: removed outright, or deactivated because it has history."""

    id: int
    deleted: bool
    deactivated: bool
    message: str
