"""Domain error taxonomy and its HTTP rendering.

Services raise these exceptions; they never return error dicts. Every
rejected operation leaves StockItem, Alert and StockRequest rows exactly as
they were before the call. The FastAPI handler at the bottom maps each
class to a status code and a stable machine-readable ``code``.
"""

import logging
from decimal import Decimal
from typing import Any, Dict

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base class for all engine failures reported to the caller."""

    status_code: int = 400
    code: str = "domain_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        for key, value in self.extra.items():
            payload[key] = float(value) if isinstance(value, Decimal) else value
        return payload


class ValidationError(DomainError):
    """Malformed input, rejected before any state change."""

    status_code = 422
    code = "validation_error"


class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, id=entity_id)


class InvalidStateError(DomainError):
    """Operation not legal for the entity's current state."""

    status_code = 409
    code = "invalid_state"


class InvalidTransitionError(InvalidStateError):
    """Stock request state machine rejected the transition."""

    code = "invalid_transition"

    def __init__(self, request_id: int, current: str, target: str):
        super().__init__(
            f"Stock request {request_id} cannot move from '{current}' to '{target}'",
            id=request_id,
            current_status=current,
            target_status=target,
        )


class InactiveStockError(InvalidStateError):
    code = "inactive_stock"

    def __init__(self, stock_id: int):
        super().__init__(f"Stock item {stock_id} is deactivated", id=stock_id)


class InsufficientStockError(DomainError):
    """The mutation would drive current_stock below zero."""

    status_code = 409
    code = "insufficient_stock"

    def __init__(self, stock_id: int, available: Decimal, requested: Decimal, unit: str = ""):
        self.stock_id = stock_id
        self.available = available
        self.requested = requested
        unit_suffix = f" {unit}" if unit else ""
        super().__init__(
            f"Insufficient stock for item {stock_id}: need {requested}{unit_suffix}, "
            f"have {available}{unit_suffix}",
            id=stock_id,
            available=available,
            requested=requested,
        )


class ConcurrencyConflictError(DomainError):
    """Optimistic version check kept failing after all retries."""

    status_code = 409
    code = "concurrency_conflict"

    def __init__(self, entity: str, entity_id: int, attempts: int):
        super().__init__(
            f"{entity} {entity_id} was modified concurrently; gave up after {attempts} attempts",
            entity=entity,
            id=entity_id,
        )


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Render a DomainError as ``{"detail", "code", ...}`` with its status."""
    log_level = logging.WARNING if exc.status_code >= 500 else logging.INFO
    logger.log(
        log_level,
        f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}",
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def error_summary(exc: DomainError) -> Dict[str, Any]:
    """Compact form used in bulk operation failure lists."""
    return {"code": exc.code, "detail": exc.message}
