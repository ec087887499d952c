"""API routes."""

import logging
from fastapi import APIRouter

from medstock.api.routes import (
    categories, clinics, events, reports, stock_alerts, stock_requests, stocks, suppliers,
)

logger = logging.getLogger(__name__)

api_router = APIRouter()

# Catalog
api_router.include_router(clinics.router, prefix="/clinics", tags=["clinics"])
api_router.include_router(suppliers.router, prefix="/suppliers", tags=["suppliers"])
api_router.include_router(stocks.router, prefix="/stocks", tags=["stocks"])
api_router.include_router(categories.router, prefix="/categories", tags=["categories"])

# Alerts and transfers
api_router.include_router(stock_alerts.router, prefix="/stock-alerts", tags=["stock-alerts"])
api_router.include_router(stock_requests.router, prefix="/stock-requests", tags=["stock-requests"])

# Reporting
api_router.include_router(reports.router, prefix="/reports", tags=["reports"])

# Diagnostics
api_router.include_router(events.router, prefix="/events", tags=["events"])
