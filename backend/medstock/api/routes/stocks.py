"""Stock routes - catalog, ledger mutations, level listings and history.

Quantity only changes through ``/adjust``, ``/use`` and completed stock
requests; ``PUT /{id}`` edits catalog attributes.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Query, Request, status

from medstock.core.events import EventBusDep
from medstock.core.rate_limit import READ_LIMIT, WRITE_LIMIT, limiter
from medstock.db.session import DbSession
from medstock.schemas.pagination import MAX_LIMIT, Page
from medstock.schemas.stock import (
    LedgerOperationResponse,
    StockAdjustRequest,
    StockCreate,
    StockDeleteResponse,
    StockResponse,
    StockStats,
    StockUpdate,
    StockUseRequest,
)
from medstock.services.stock_ledger import StockLedger
from medstock.services.stock_service import StockService
from medstock.services.threshold_classifier import StockLevel

logger = logging.getLogger(__name__)

router = APIRouter()


def _responses(items) -> List[StockResponse]:
    return [StockResponse.model_validate(item) for item in items]


# ==================== CATALOG ====================

@router.get("/", response_model=Page[StockResponse])
@limiter.limit(READ_LIMIT)
def list_stocks(
    request: Request,
    db: DbSession,
    name: Optional[str] = None,
    category: Optional[str] = None,
    supplier_id: Optional[int] = None,
    clinic_id: Optional[int] = None,
    status: Optional[str] = Query(None, pattern="^(active|inactive)$"),
    level: Optional[StockLevel] = None,
    expiry_days: Optional[int] = Query(None, ge=0),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
):
    """List stock items with filters."""
    items, total = StockService(db).list_stocks(
        name=name, category=category, supplier_id=supplier_id, clinic_id=clinic_id,
        status=status, level=level, expiry_days=expiry_days, skip=skip, limit=limit,
    )
    return Page[StockResponse].build(_responses(items), total, skip, limit)


@router.post("/", response_model=StockResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
def create_stock(request: Request, data: StockCreate, db: DbSession, bus: EventBusDep):
    """Create a stock item. A positive ``current_stock`` is booked as initial stock."""
    return StockService(db, bus).create_stock(data)


@router.get("/stats", response_model=StockStats)
@limiter.limit(READ_LIMIT)
def get_stock_stats(request: Request, db: DbSession, clinic_id: Optional[int] = None):
    return StockService(db).stats(clinic_id)


@router.get("/categories", response_model=List[str])
@limiter.limit(READ_LIMIT)
def list_categories(request: Request, db: DbSession, clinic_id: Optional[int] = None):
    return StockService(db).categories(clinic_id)


# ==================== LEVEL LISTINGS ====================

@router.get("/levels/low", response_model=List[StockResponse])
@limiter.limit(READ_LIMIT)
def list_low_stock(request: Request, db: DbSession, clinic_id: Optional[int] = None):
    """Active items at or below their minimum level."""
    return _responses(StockService(db).low_stock(clinic_id))


@router.get("/levels/critical", response_model=List[StockResponse])
@limiter.limit(READ_LIMIT)
def list_critical_stock(request: Request, db: DbSession, clinic_id: Optional[int] = None):
    """Active items at or below their critical level."""
    return _responses(StockService(db).critical_stock(clinic_id))


@router.get("/levels/expiring", response_model=List[StockResponse])
@limiter.limit(READ_LIMIT)
def list_expiring_stock(
    request: Request,
    db: DbSession,
    days: Optional[int] = Query(None, ge=0),
    clinic_id: Optional[int] = None,
):
    """Active items expiring within ``days`` (defaults to the report horizon)."""
    return _responses(StockService(db).expiring_stock(days, clinic_id))


# ==================== SINGLE ITEM ====================

@router.get("/{stock_id}", response_model=StockResponse)
@limiter.limit(READ_LIMIT)
def get_stock(request: Request, stock_id: int, db: DbSession):
    return StockService(db).get_stock(stock_id)


@router.put("/{stock_id}", response_model=StockResponse)
@limiter.limit(WRITE_LIMIT)
def update_stock(request: Request, stock_id: int, data: StockUpdate, db: DbSession, bus: EventBusDep):
    return StockService(db, bus).update_stock(stock_id, data)


@router.delete("/{stock_id}", response_model=StockDeleteResponse)
@limiter.limit(WRITE_LIMIT)
def delete_stock(request: Request, stock_id: int, db: DbSession, bus: EventBusDep):
    """Delete an item, or deactivate it when it has usage or transfer history."""
    return StockService(db, bus).delete_stock(stock_id)


@router.post("/{stock_id}/adjust", response_model=StockResponse)
@limiter.limit(WRITE_LIMIT)
def adjust_stock(request: Request, stock_id: int, data: StockAdjustRequest, db: DbSession, bus: EventBusDep):
    """Manual increase or decrease of the quantity."""
    return StockLedger(db, bus).adjust(
        stock_id, data.quantity, data.type, data.reason, data.performed_by, notes=data.notes
    )


@router.post("/{stock_id}/use", response_model=StockResponse)
@limiter.limit(WRITE_LIMIT)
def use_stock(request: Request, stock_id: int, data: StockUseRequest, db: DbSession, bus: EventBusDep):
    """Record internal consumption."""
    return StockLedger(db, bus).use(
        stock_id, data.quantity, data.reason, data.performed_by, used_by=data.used_by, notes=data.notes
    )


@router.post("/{stock_id}/deactivate", response_model=StockResponse)
@limiter.limit(WRITE_LIMIT)
def deactivate_stock(request: Request, stock_id: int, db: DbSession, bus: EventBusDep):
    return StockService(db, bus).deactivate_stock(stock_id)


@router.post("/{stock_id}/reactivate", response_model=StockResponse)
@limiter.limit(WRITE_LIMIT)
def reactivate_stock(request: Request, stock_id: int, db: DbSession, bus: EventBusDep):
    return StockService(db, bus).reactivate_stock(stock_id)


@router.get("/{stock_id}/history", response_model=Page[LedgerOperationResponse])
@limiter.limit(READ_LIMIT)
def get_stock_history(
    request: Request,
    stock_id: int,
    db: DbSession,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
):
    """Ledger operations of one item, newest first."""
    operations, total = StockLedger(db).history(stock_id, skip=skip, limit=limit)
    items = [LedgerOperationResponse.model_validate(op) for op in operations]
    return Page[LedgerOperationResponse].build(items, total, skip, limit)
