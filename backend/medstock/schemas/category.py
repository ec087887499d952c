"""Category schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

HEX_COLOR = r"^#[0-9a-fA-F]{6}$"


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: str = Field("#64748b", pattern=HEX_COLOR)
    description: Optional[str] = None
    is_active: bool = True

    model_config = {"extra": "forbid"}


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)
    description: Optional[str] = None
    is_active: Optional[bool] = None

    model_config = {"extra": "forbid"}


class CategoryResponse(BaseModel):
    id: int
    name: str
    color: str
    description: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CategoryStats(BaseModel):
    """Per-category figures over active stock items."""

    name: str
    item_count: int
    total_stock: Decimal
    total_value: Decimal
    low_stock_count: int
    critical_stock_count: int
    out_of_stock_count: int
    usage: Decimal = Field(description="Quantity consumed in the report period")
