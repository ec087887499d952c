"""Report routes - dashboard, stock movement and usage, clinics, transfers, alerts.

Period filters default to the last 30 days ending now.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, Request

from medstock.core.rate_limit import READ_LIMIT, limiter
from medstock.db.session import DbSession
from medstock.models.stock import OperationKind
from medstock.services.report_service import ReportService

router = APIRouter()


# =============================================================================
# DASHBOARD
# =============================================================================

@router.get("/dashboard/summary", response_model=Dict[str, Any])
@limiter.limit(READ_LIMIT)
def dashboard_summary(request: Request, db: DbSession, clinic_id: Optional[int] = None):
    """Headline stock, alert and request counts."""
    return ReportService(db).dashboard_summary(clinic_id)


# =============================================================================
# STOCK REPORTS
# =============================================================================

@router.get("/stocks/movements", response_model=Dict[str, Any])
@limiter.limit(READ_LIMIT)
def stock_movements(
    request: Request,
    db: DbSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    clinic_id: Optional[int] = None,
    kind: Optional[OperationKind] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    return ReportService(db).movements(start_date, end_date, clinic_id, kind, limit)


@router.get("/stocks/usage-trends", response_model=Dict[str, Any])
@limiter.limit(READ_LIMIT)
def usage_trends(
    request: Request,
    db: DbSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    clinic_id: Optional[int] = None,
    category: Optional[str] = None,
):
    """Daily usage; days without usage are omitted from the trend."""
    return ReportService(db).usage_trends(start_date, end_date, clinic_id, category)


@router.get("/stocks/top-used", response_model=Dict[str, Any])
@limiter.limit(READ_LIMIT)
def top_used(
    request: Request,
    db: DbSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    clinic_id: Optional[int] = None,
    limit: int = Query(10, ge=1, le=100),
):
    return ReportService(db).usage_ranking(start_date, end_date, clinic_id, limit)


@router.get("/stocks/least-used", response_model=Dict[str, Any])
@limiter.limit(READ_LIMIT)
def least_used(
    request: Request,
    db: DbSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    clinic_id: Optional[int] = None,
    limit: int = Query(10, ge=1, le=100),
):
    return ReportService(db).usage_ranking(start_date, end_date, clinic_id, limit, least=True)


@router.get("/stocks/expiry-analysis", response_model=Dict[str, Any])
@limiter.limit(READ_LIMIT)
def expiry_analysis(
    request: Request,
    db: DbSession,
    clinic_id: Optional[int] = None,
    days: int = Query(30, ge=0, le=365),
):
    return ReportService(db).expiry_analysis(clinic_id, days)


@router.get("/stocks/categories", response_model=Dict[str, Any])
@limiter.limit(READ_LIMIT)
def category_analysis(
    request: Request,
    db: DbSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    clinic_id: Optional[int] = None,
    category: Optional[str] = None,
):
    return ReportService(db).category_analysis(clinic_id, category, start_date, end_date)


# =============================================================================
# CLINIC REPORTS
# =============================================================================

@router.get("/clinics/consumption", response_model=Dict[str, Any])
@limiter.limit(READ_LIMIT)
def clinic_consumption(
    request: Request,
    db: DbSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
):
    return ReportService(db).clinic_consumption(start_date, end_date)


# =============================================================================
# TRANSFER REPORTS
# =============================================================================

@router.get("/transfers/analysis", response_model=Dict[str, Any])
@limiter.limit(READ_LIMIT)
def transfer_analysis(
    request: Request,
    db: DbSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    clinic_id: Optional[int] = None,
):
    return ReportService(db).transfer_analysis(start_date, end_date, clinic_id)


# =============================================================================
# ALERT REPORTS
# =============================================================================

@router.get("/alerts/resolution-times", response_model=Dict[str, Any])
@limiter.limit(READ_LIMIT)
def alert_resolution_times(
    request: Request,
    db: DbSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    clinic_id: Optional[int] = None,
):
    return ReportService(db).alert_resolution_times(start_date, end_date, clinic_id)


@router.get("/alerts/recurring", response_model=Dict[str, Any])
@limiter.limit(READ_LIMIT)
def recurring_alerts(
    request: Request,
    db: DbSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    clinic_id: Optional[int] = None,
    min_count: int = Query(2, ge=1),
):
    """Items raising the same alert type at least ``min_count`` times."""
    return ReportService(db).recurring_alerts(start_date, end_date, clinic_id, min_count)
