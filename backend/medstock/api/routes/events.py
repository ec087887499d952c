"""Domain event routes - recently published events for diagnostics and polling clients."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query, Request

from medstock.core.events import EventBusDep
from medstock.core.rate_limit import READ_LIMIT, limiter

router = APIRouter()


@router.get("/recent", response_model=List[Dict[str, Any]])
@limiter.limit(READ_LIMIT)
def list_recent_events(
    request: Request,
    bus: EventBusDep,
    event: Optional[str] = Query(None, description="Event name, e.g. StockQuantityChanged"),
    limit: int = Query(50, ge=1, le=200),
):
    """Most recent events first."""
    return [e.to_dict() for e in bus.recent(limit=limit, event_name=event)]
