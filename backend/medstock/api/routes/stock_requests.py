"""Stock request routes - inter-clinic transfer requests."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Query, Request, status

from medstock.core.events import EventBusDep
from medstock.core.rate_limit import READ_LIMIT, WRITE_LIMIT, limiter
from medstock.db.session import DbSession
from medstock.models.stock_request import StockRequestStatus
from medstock.schemas.pagination import MAX_LIMIT, Page
from medstock.schemas.stock_request import (
    StockRequestApprove,
    StockRequestComplete,
    StockRequestCreate,
    StockRequestReject,
    StockRequestResponse,
    StockRequestStats,
)
from medstock.services.transfer_workflow import TransferWorkflow

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=Page[StockRequestResponse])
@limiter.limit(READ_LIMIT)
def list_stock_requests(
    request: Request,
    db: DbSession,
    clinic_id: Optional[int] = None,
    type: Optional[str] = Query(None, pattern="^(sent|received)$"),
    status: Optional[StockRequestStatus] = None,
    search: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
):
    """List requests; with ``clinic_id``, ``type`` picks sent or received ones."""
    items, total = TransferWorkflow(db).list_requests(
        clinic_id=clinic_id,
        type=type,
        status=status.value if status else None,
        search=search,
        start_date=start_date,
        end_date=end_date,
        skip=skip,
        limit=limit,
    )
    return Page[StockRequestResponse].build(
        [StockRequestResponse.model_validate(r) for r in items], total, skip, limit
    )


@router.post("/", response_model=StockRequestResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
def create_stock_request(request: Request, data: StockRequestCreate, db: DbSession, bus: EventBusDep):
    return TransferWorkflow(db, bus).create(
        requester_clinic_id=data.requester_clinic_id,
        source_clinic_id=data.requested_from_clinic_id,
        stock_id=data.stock_id,
        quantity=data.requested_quantity,
        reason=data.request_reason,
        requested_by=data.requested_by,
        notes=data.notes,
    )


@router.get("/stats", response_model=StockRequestStats)
@limiter.limit(READ_LIMIT)
def get_stock_request_stats(request: Request, db: DbSession, clinic_id: Optional[int] = None):
    return TransferWorkflow(db).stats(clinic_id)


@router.get("/pending/list", response_model=List[StockRequestResponse])
@limiter.limit(READ_LIMIT)
def list_pending_requests(request: Request, db: DbSession, clinic_id: int):
    """Requests waiting for ``clinic_id`` to approve or reject."""
    return TransferWorkflow(db).pending_for_clinic(clinic_id)


@router.get("/{request_id}", response_model=StockRequestResponse)
@limiter.limit(READ_LIMIT)
def get_stock_request(request: Request, request_id: int, db: DbSession):
    return TransferWorkflow(db).get_request(request_id)


@router.put("/{request_id}/approve", response_model=StockRequestResponse)
@limiter.limit(WRITE_LIMIT)
def approve_stock_request(
    request: Request, request_id: int, data: StockRequestApprove, db: DbSession, bus: EventBusDep
):
    return TransferWorkflow(db, bus).approve(request_id, data.approved_quantity, data.approved_by, data.notes)


@router.put("/{request_id}/reject", response_model=StockRequestResponse)
@limiter.limit(WRITE_LIMIT)
def reject_stock_request(
    request: Request, request_id: int, data: StockRequestReject, db: DbSession, bus: EventBusDep
):
    return TransferWorkflow(db, bus).reject(request_id, data.rejection_reason, data.rejected_by)


@router.put("/{request_id}/complete", response_model=StockRequestResponse)
@limiter.limit(WRITE_LIMIT)
def complete_stock_request(
    request: Request, request_id: int, data: StockRequestComplete, db: DbSession, bus: EventBusDep
):
    """Move the approved quantity; fails with insufficient_stock and leaves the request approved."""
    return TransferWorkflow(db, bus).complete(request_id, data.performed_by)
