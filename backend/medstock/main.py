"""FastAPI application entry point."""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from medstock.api.routes import api_router
from medstock.core.config import settings
from medstock.core.events import event_bus
from medstock.core.exceptions import DomainError, domain_error_handler
from medstock.core.logging_config import configure_logging
from medstock.core.rate_limit import limiter
from medstock.db.base import Base
from medstock.db.session import SessionLocal, engine
from medstock.services.alert_engine import register_alert_engine
from medstock.services.scheduler_service import alert_sweep_job, scheduler

APP_VERSION = "1.0.0"

configure_logging(settings)
logger = logging.getLogger(__name__)
access_logger = logging.getLogger("medstock.access")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}
QUIET_PATHS = frozenset({"/", "/health", "/health/ready", "/docs", "/openapi.json"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id, stamps security headers and logs the outcome."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        route = f"{request.method} {request.url.path}"

        try:
            response = await call_next(request)
        except Exception:
            access_logger.exception(
                "%s failed after %.1f ms", route, (time.perf_counter() - started) * 1000,
                extra={"request_id": request_id},
            )
            raise

        response.headers.update(SECURITY_HEADERS)
        response.headers["X-Request-ID"] = request_id

        if request.url.path not in QUIET_PATHS:
            access_logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                "%s -> %d in %.1f ms",
                route,
                response.status_code,
                (time.perf_counter() - started) * 1000,
                extra={"request_id": request_id},
            )
        return response


async def _stop_scheduler(task: asyncio.Task) -> None:
    scheduler.stop()
    try:
        await task
    except asyncio.CancelledError:
        pass
    scheduler.remove_task("alert_sweep")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("medstock %s starting", APP_VERSION)

    # PostgreSQL deployments are migrated with alembic instead
    if engine.dialect.name == "sqlite":
        Base.metadata.create_all(bind=engine)

    register_alert_engine(event_bus, SessionLocal)

    sweep_task = None
    if settings.alert_sweep_enabled:
        scheduler.add_task(
            "alert_sweep",
            alert_sweep_job(SessionLocal, event_bus),
            settings.alert_sweep_interval_seconds,
        )
        sweep_task = scheduler.launch()

    yield

    if sweep_task is not None:
        await _stop_scheduler(sweep_task)
    event_bus.reset()
    logger.info("medstock stopped")


app = FastAPI(
    title="Medstock",
    description="Multi-clinic medical supply inventory: stock ledger, alerts and inter-clinic transfers",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(DomainError, domain_error_handler)

app.add_middleware(RequestContextMiddleware)
# Registered last so it wraps everything else
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "Origin", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=600,
)

app.include_router(api_router, prefix=settings.api_v1_prefix)


def _database_check() -> str:
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Readiness check could not reach the database")
        return "unhealthy"
    return "healthy"


@app.get("/health")
def health_check():
    """Liveness: the process is up and serving."""
    return {"status": "healthy", "version": APP_VERSION}


@app.get("/health/ready")
def readiness_check():
    database = _database_check()
    handlers = event_bus.subscriber_count()
    return {
        "status": "ready" if database == "healthy" else "degraded",
        "version": APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": database,
            "alert_engine": f"healthy ({handlers} handlers)" if handlers else "not subscribed",
        },
    }


@app.get("/")
def root():
    return {"service": "medstock", "version": APP_VERSION, "docs": "/docs", "health": "/health"}


@app.get(f"{settings.api_v1_prefix}/scheduler/status")
def scheduler_status():
    """State of the periodic background tasks."""
    return {"running": scheduler.running, "tasks": scheduler.get_status()}
