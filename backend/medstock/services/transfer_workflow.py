"""Transfer Workflow - inter-clinic stock request state machine.

    pending --approve--> approved --complete--> completed
       \\
        --reject--> rejected

Only completion touches stock. It locks the source and destination items
in ascending id order, writes a ``transfer_out`` and a ``transfer_in``
ledger operation and moves the request to ``completed`` in one
transaction. If the source no longer holds the approved quantity the whole
transaction is rolled back and the request stays ``approved``.
"""

import logging
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from medstock.core.config import settings
from medstock.core.events import DomainEvent, EventBus, RequestTransitioned, event_bus
from medstock.core.exceptions import (
    ConcurrencyConflictError,
    DomainError,
    InactiveStockError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from medstock.db.base import utcnow
from medstock.models.clinic import Clinic
from medstock.models.stock import LedgerOperation, OperationKind, StockItem
from medstock.models.stock_request import StockRequest, StockRequestStatus
from medstock.services.stock_ledger import StockLedger, quantity_event, to_decimal

logger = logging.getLogger(__name__)

# Catalog attributes copied onto a destination item created by a transfer
COPIED_ATTRIBUTES = (
    "name", "code", "description", "brand", "category", "unit", "purchase_price", "currency",
    "supplier_id", "expiry_date", "track_expiry", "track_batch", "min_stock_level", "critical_stock_level",
)

Mutation = Callable[[StockRequest], List[Tuple[StockItem, LedgerOperation]]]


def max_requestable(current_stock: Decimal) -> Decimal:
    """Largest quantity one request may ask of a source holding ``current_stock``."""
    fraction = Decimal(str(settings.transfer_max_fraction))
    return (Decimal(current_stock) * fraction).to_integral_value(rounding=ROUND_FLOOR)


class TransferWorkflow:
    """Create, approve, reject and complete stock requests."""

    def __init__(self, db: Session, bus: Optional[EventBus] = None):
        self.db = db
        self.bus = bus if bus is not None else event_bus
        self.ledger = StockLedger(db, self.bus)

    # ===== VALIDATION HELPERS =====

    @staticmethod
    def _require_reason(value: Optional[str], field: str) -> str:
        text = (value or "").strip()
        if len(text) < settings.min_reason_length:
            raise ValidationError(
                f"{field} must be at least {settings.min_reason_length} characters",
                field=field,
            )
        return text

    @staticmethod
    def _require_actor(value: Optional[str], field: str) -> str:
        if value is None or not value.strip():
            raise ValidationError(f"{field} is required", field=field)
        return value.strip()

    def _active_clinic(self, clinic_id: int) -> Clinic:
        clinic = self.db.get(Clinic, clinic_id)
        if clinic is None:
            raise NotFoundError("Clinic", clinic_id)
        if not clinic.is_active:
            raise InvalidStateError(f"Clinic {clinic_id} is inactive", id=clinic_id)
        return clinic

    # ===== CREATE =====

    def create(
        self,
        requester_clinic_id: int,
        source_clinic_id: int,
        stock_id: int,
        quantity,
        reason: str,
        requested_by: str,
        notes: Optional[str] = None,
    ) -> StockRequest:
        """Open a pending request. Stock is not touched."""
        if requester_clinic_id == source_clinic_id:
            raise ValidationError("A clinic cannot request stock from itself", field="requested_from_clinic_id")
        amount = to_decimal(quantity, "requested_quantity")
        if amount <= 0:
            raise ValidationError("requested_quantity must be positive", field="requested_quantity")
        reason = self._require_reason(reason, "request_reason")
        requested_by = self._require_actor(requested_by, "requested_by")

        self._active_clinic(requester_clinic_id)
        self._active_clinic(source_clinic_id)

        stock = self.db.get(StockItem, stock_id)
        if stock is None:
            raise NotFoundError("StockItem", stock_id)
        if stock.clinic_id != source_clinic_id:
            raise ValidationError(
                f"Stock item {stock_id} does not belong to clinic {source_clinic_id}",
                field="stock_id",
            )
        if not stock.is_active:
            raise InactiveStockError(stock_id)

        limit = max_requestable(stock.current_stock)
        if amount > limit:
            raise ValidationError(
                f"Requested {amount} exceeds the maximum of {limit} "
                f"({settings.transfer_max_fraction:.0%} of current stock {stock.current_stock})",
                field="requested_quantity",
                max_allowed=limit,
            )

        request = StockRequest(
            requester_clinic_id=requester_clinic_id,
            requested_from_clinic_id=source_clinic_id,
            stock_id=stock_id,
            requested_quantity=amount,
            status=StockRequestStatus.PENDING.value,
            request_reason=reason,
            notes=notes,
            requested_by=requested_by,
            requested_at=utcnow(),
        )
        self.db.add(request)
        self.db.flush()
        event = RequestTransitioned(
            request_id=request.id,
            old_status=None,
            new_status=StockRequestStatus.PENDING.value,
            requester_clinic_id=requester_clinic_id,
            source_clinic_id=source_clinic_id,
        )
        self.db.commit()

        logger.info(
            f"Stock request {request.id} created: clinic {requester_clinic_id} asks clinic "
            f"{source_clinic_id} for {amount} of stock {stock_id}"
        )
        self.bus.publish(event)
        return request

    # ===== TRANSITIONS =====

    def _lock_request(self, request_id: int) -> StockRequest:
        request = (
            self.db.query(StockRequest)
            .filter(StockRequest.id == request_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if request is None:
            raise NotFoundError("StockRequest", request_id)
        return request

    def _transition(self, request_id: int, target: StockRequestStatus, mutate: Mutation) -> StockRequest:
        """Lock, check the move is legal, apply ``mutate`` and commit, retrying on version conflicts."""
        attempts = settings.ledger_max_retries
        for attempt in range(1, attempts + 1):
            try:
                request = self._lock_request(request_id)
                old_status = request.status
                if not request.can_transition_to(target):
                    raise InvalidTransitionError(request_id, old_status, target.value)
                movements = mutate(request)
                request.status = target.value
                self.db.flush()
                events: List[DomainEvent] = [quantity_event(stock, op) for stock, op in movements]
                events.append(RequestTransitioned(
                    request_id=request.id,
                    old_status=old_status,
                    new_status=target.value,
                    requester_clinic_id=request.requester_clinic_id,
                    source_clinic_id=request.requested_from_clinic_id,
                ))
                self.db.commit()
            except (StaleDataError, IntegrityError) as exc:
                self.db.rollback()
                logger.warning(
                    f"Conflict moving stock request {request_id} to {target.value} "
                    f"({type(exc).__name__}), attempt {attempt}/{attempts}"
                )
                continue
            except DomainError:
                self.db.rollback()
                raise

            logger.info(f"Stock request {request_id}: {old_status} -> {target.value}")
            for event in events:
                self.bus.publish(event)
            return request

        raise ConcurrencyConflictError("StockRequest", request_id, attempts)

    def approve(self, request_id: int, approved_quantity, approved_by: str, notes: Optional[str] = None) -> StockRequest:
        """Approve up to the requested quantity. Source stock is checked at completion."""
        amount = to_decimal(approved_quantity, "approved_quantity")
        if amount <= 0:
            raise ValidationError("approved_quantity must be positive", field="approved_quantity")
        approved_by = self._require_actor(approved_by, "approved_by")

        def mutate(request: StockRequest):
            if amount > request.requested_quantity:
                raise ValidationError(
                    f"approved_quantity {amount} exceeds requested quantity {request.requested_quantity}",
                    field="approved_quantity",
                )
            request.approved_quantity = amount
            request.approved_by = approved_by
            request.approved_at = utcnow()
            if notes:
                request.notes = notes
            return []

        return self._transition(request_id, StockRequestStatus.APPROVED, mutate)

    def reject(self, request_id: int, reason: str, rejected_by: str) -> StockRequest:
        reason = self._require_reason(reason, "rejection_reason")
        rejected_by = self._require_actor(rejected_by, "rejected_by")

        def mutate(request: StockRequest):
            request.rejection_reason = reason
            request.rejected_by = rejected_by
            request.rejected_at = utcnow()
            return []

        return self._transition(request_id, StockRequestStatus.REJECTED, mutate)

    def complete(self, request_id: int, performed_by: str) -> StockRequest:
        """Move the approved quantity from the source item to the requester's item."""
        performed_by = self._require_actor(performed_by, "performed_by")

        def mutate(request: StockRequest):
            source = self.db.get(StockItem, request.stock_id)
            if source is None:
                raise NotFoundError("StockItem", request.stock_id)
            destination = self._find_destination(request.requester_clinic_id, source)

            if destination is None:
                locked = self.ledger.lock_many([source.id])
                source = locked[source.id]
                destination = self._create_destination(request.requester_clinic_id, source)
            else:
                locked = self.ledger.lock_many([source.id, destination.id])
                source, destination = locked[source.id], locked[destination.id]

            quantity = request.approved_quantity
            out_op = self.ledger.apply(
                source, -quantity, OperationKind.TRANSFER_OUT,
                reason=f"Transfer to clinic {request.requester_clinic_id} (request #{request.id})",
                performed_by=performed_by,
                reference_type="stock_request", reference_id=request.id,
            )
            in_op = self.ledger.apply(
                destination, quantity, OperationKind.TRANSFER_IN,
                reason=f"Transfer from clinic {request.requested_from_clinic_id} (request #{request.id})",
                performed_by=performed_by,
                reference_type="stock_request", reference_id=request.id,
            )
            request.destination_stock_id = destination.id
            request.performed_by = performed_by
            request.completed_at = utcnow()
            return [(source, out_op), (destination, in_op)]

        return self._transition(request_id, StockRequestStatus.COMPLETED, mutate)

    def _find_destination(self, clinic_id: int, source: StockItem) -> Optional[StockItem]:
        return (
            self.db.query(StockItem)
            .filter(
                StockItem.clinic_id == clinic_id,
                StockItem.name == source.name,
                StockItem.unit == source.unit,
            )
            .first()
        )

    def _create_destination(self, clinic_id: int, source: StockItem) -> StockItem:
        destination = StockItem(
            clinic_id=clinic_id,
            current_stock=Decimal("0"),
            is_active=True,
            **{attr: getattr(source, attr) for attr in COPIED_ATTRIBUTES},
        )
        self.db.add(destination)
        # Unique (clinic, name, unit) turns a concurrent creation into an IntegrityError
        self.db.flush()
        logger.info(f"Created stock item {destination.id} in clinic {clinic_id} from source item {source.id}")
        return destination

    # ===== QUERIES =====

    def get_request(self, request_id: int) -> StockRequest:
        request = self.db.get(StockRequest, request_id)
        if request is None:
            raise NotFoundError("StockRequest", request_id)
        return request

    def list_requests(
        self,
        clinic_id: Optional[int] = None,
        type: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[StockRequest], int]:
        """``type`` is ``sent`` (clinic is requester), ``received`` (clinic is source) or both."""
        query = self.db.query(StockRequest)
        if clinic_id is not None:
            if type == "sent":
                query = query.filter(StockRequest.requester_clinic_id == clinic_id)
            elif type == "received":
                query = query.filter(StockRequest.requested_from_clinic_id == clinic_id)
            else:
                query = query.filter(or_(
                    StockRequest.requester_clinic_id == clinic_id,
                    StockRequest.requested_from_clinic_id == clinic_id,
                ))
        if status:
            query = query.filter(StockRequest.status == status)
        if search:
            pattern = f"%{search}%"
            query = query.join(StockItem, StockItem.id == StockRequest.stock_id).filter(or_(
                StockItem.name.ilike(pattern),
                StockRequest.request_reason.ilike(pattern),
                StockRequest.requested_by.ilike(pattern),
            ))
        if start_date:
            query = query.filter(StockRequest.requested_at >= start_date)
        if end_date:
            query = query.filter(StockRequest.requested_at <= end_date)

        total = query.count()
        items = query.order_by(StockRequest.requested_at.desc(), StockRequest.id.desc()).offset(skip).limit(limit).all()
        return items, total

    def pending_for_clinic(self, clinic_id: int) -> List[StockRequest]:
        """Requests waiting for ``clinic_id`` to approve or reject."""
        return (
            self.db.query(StockRequest)
            .filter(and_(
                StockRequest.requested_from_clinic_id == clinic_id,
                StockRequest.status == StockRequestStatus.PENDING.value,
            ))
            .order_by(StockRequest.requested_at.asc())
            .all()
        )

    def stats(self, clinic_id: Optional[int] = None) -> Dict[str, int]:
        query = self.db.query(StockRequest.status, func.count(StockRequest.id))
        if clinic_id is not None:
            query = query.filter(or_(
                StockRequest.requester_clinic_id == clinic_id,
                StockRequest.requested_from_clinic_id == clinic_id,
            ))
        counts = {status: count for status, count in query.group_by(StockRequest.status).all()}
        result = {s.value: counts.get(s.value, 0) for s in StockRequestStatus}
        result["total"] = sum(counts.values())
        return result
