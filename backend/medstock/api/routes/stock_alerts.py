"""Stock alert routes - listing, manual alerts, resolution and reconciliation."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Query, Request, status

from medstock.core.events import EventBusDep
from medstock.core.rate_limit import READ_LIMIT, WRITE_LIMIT, limiter
from medstock.db.session import DbSession
from medstock.models.alert import AlertSeverity, AlertStatus, AlertType
from medstock.schemas.alert import (
    AlertCreate,
    AlertDismissRequest,
    AlertResolveRequest,
    AlertResponse,
    AlertStats,
    BulkIdsRequest,
    BulkResolveRequest,
    BulkResult,
    PendingCount,
    ReconcileResult,
    SweepResult,
)
from medstock.schemas.pagination import MAX_LIMIT, Page
from medstock.services.alert_engine import AlertEngine, BulkOutcome

logger = logging.getLogger(__name__)

router = APIRouter()


def _bulk_result(outcome: BulkOutcome) -> BulkResult:
    return BulkResult(succeeded=outcome.succeeded, failed=outcome.failed)


@router.get("/", response_model=Page[AlertResponse])
@limiter.limit(READ_LIMIT)
def list_alerts(
    request: Request,
    db: DbSession,
    type: Optional[AlertType] = None,
    severity: Optional[AlertSeverity] = None,
    status: Optional[AlertStatus] = None,
    clinic_id: Optional[int] = None,
    stock_id: Optional[int] = None,
    is_resolved: Optional[bool] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
):
    """List alerts, newest first."""
    items, total = AlertEngine(db).list_alerts(
        type=type.value if type else None,
        severity=severity.value if severity else None,
        status=status.value if status else None,
        clinic_id=clinic_id,
        stock_id=stock_id,
        is_resolved=is_resolved,
        date_from=date_from,
        date_to=date_to,
        search=search,
        skip=skip,
        limit=limit,
    )
    return Page[AlertResponse].build([AlertResponse.model_validate(a) for a in items], total, skip, limit)


@router.post("/", response_model=AlertResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT)
def create_alert(request: Request, data: AlertCreate, db: DbSession, bus: EventBusDep):
    """Raise an alert by hand."""
    return AlertEngine(db, bus).create_alert(data)


@router.get("/active", response_model=List[AlertResponse])
@limiter.limit(READ_LIMIT)
def list_active_alerts(request: Request, db: DbSession, clinic_id: Optional[int] = None):
    return AlertEngine(db).active_alerts(clinic_id)


@router.get("/statistics", response_model=AlertStats)
@limiter.limit(READ_LIMIT)
def get_alert_statistics(request: Request, db: DbSession, clinic_id: Optional[int] = None):
    return AlertEngine(db).stats(clinic_id)


@router.get("/pending/count", response_model=PendingCount)
@limiter.limit(READ_LIMIT)
def get_pending_count(request: Request, db: DbSession, clinic_id: Optional[int] = None):
    return {"count": AlertEngine(db).pending_count(clinic_id)}


@router.post("/sweep", response_model=SweepResult)
@limiter.limit(WRITE_LIMIT)
def run_sweep(request: Request, db: DbSession, bus: EventBusDep, clinic_id: Optional[int] = None):
    """Reconcile every stock item now instead of waiting for the scheduler."""
    summary = AlertEngine(db, bus).sweep(clinic_id)
    return SweepResult(checked=summary.checked, created=summary.created, auto_resolved=summary.auto_resolved)


# ==================== BULK ====================

@router.post("/bulk/resolve", response_model=BulkResult)
@limiter.limit(WRITE_LIMIT)
def bulk_resolve(request: Request, data: BulkResolveRequest, db: DbSession, bus: EventBusDep):
    """Resolve each id independently; failures are reported, not rolled back."""
    return _bulk_result(AlertEngine(db, bus).bulk_resolve(data.ids, data.resolved_by, data.notes))


@router.post("/bulk/dismiss", response_model=BulkResult)
@limiter.limit(WRITE_LIMIT)
def bulk_dismiss(request: Request, data: BulkIdsRequest, db: DbSession, bus: EventBusDep):
    return _bulk_result(AlertEngine(db, bus).bulk_dismiss(data.ids, data.dismissed_by))


@router.post("/bulk/delete", response_model=BulkResult)
@limiter.limit(WRITE_LIMIT)
def bulk_delete(request: Request, data: BulkIdsRequest, db: DbSession, bus: EventBusDep):
    return _bulk_result(AlertEngine(db, bus).bulk_delete(data.ids))


# ==================== SINGLE ALERT ====================

@router.get("/{alert_id}", response_model=AlertResponse)
@limiter.limit(READ_LIMIT)
def get_alert(request: Request, alert_id: int, db: DbSession):
    return AlertEngine(db).get_alert(alert_id)


@router.post("/{alert_id}/resolve", response_model=AlertResponse)
@limiter.limit(WRITE_LIMIT)
def resolve_alert(request: Request, alert_id: int, data: AlertResolveRequest, db: DbSession, bus: EventBusDep):
    return AlertEngine(db, bus).resolve(alert_id, data.resolved_by, data.notes)


@router.post("/{alert_id}/dismiss", response_model=AlertResponse)
@limiter.limit(WRITE_LIMIT)
def dismiss_alert(
    request: Request,
    alert_id: int,
    db: DbSession,
    bus: EventBusDep,
    data: Optional[AlertDismissRequest] = None,
):
    data = data or AlertDismissRequest()
    return AlertEngine(db, bus).dismiss(alert_id, data.dismissed_by, data.notes)


@router.delete("/{alert_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(WRITE_LIMIT)
def delete_alert(request: Request, alert_id: int, db: DbSession):
    AlertEngine(db).delete_alert(alert_id)


@router.post("/reconcile/{stock_id}", response_model=ReconcileResult)
@limiter.limit(WRITE_LIMIT)
def reconcile_stock(request: Request, stock_id: int, db: DbSession, bus: EventBusDep):
    """Reconcile one item's alerts against its current level."""
    outcome = AlertEngine(db, bus).reconcile(stock_id)
    return ReconcileResult(
        stock_id=stock_id,
        level=outcome.level.value,
        created=[a.id for a in outcome.created],
        auto_resolved=[a.id for a in outcome.auto_resolved],
    )
