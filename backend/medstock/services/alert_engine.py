"""Alert Engine - keeps Alert rows in step with each stock item's level.

Usage:
    from medstock.services.alert_engine import AlertEngine

    outcome = AlertEngine(db).reconcile(stock_id)

``reconcile`` is idempotent: an item's triggering level maps to exactly one
alert type, at most one active alert per (stock item, type) exists at any
time (also enforced by a partial unique index), and condition alerts that
no longer describe the item are moved to ``auto_resolved``. ``resolved``
and ``dismissed`` are reserved for people, and a condition they closed is
not raised again until the item passes through a different condition or
back to normal.

``register_alert_engine`` wires the engine to the event bus so every
committed ledger mutation, catalog edit and request transition is
reconciled in a fresh session.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medstock.core.config import settings
from medstock.core.events import (
    AlertClosed,
    AlertCreated,
    DomainEvent,
    EventBus,
    RequestTransitioned,
    StockDetailsChanged,
    StockQuantityChanged,
    event_bus,
)
from medstock.core.exceptions import DomainError, InvalidStateError, NotFoundError, error_summary
from medstock.db.base import utcnow
from medstock.models.alert import (
    SEVERITY_BY_TYPE,
    STOCK_CONDITION_TYPES,
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
)
from medstock.models.clinic import Clinic
from medstock.models.stock import StockItem
from medstock.models.stock_request import StockRequest, StockRequestStatus
from medstock.schemas.alert import AlertCreate
from medstock.services.threshold_classifier import StockLevel, classify, days_until_expiry

logger = logging.getLogger(__name__)

CONDITION_TYPE_VALUES = [t.value for t in STOCK_CONDITION_TYPES]
HUMAN_CLOSED = (AlertStatus.RESOLVED.value, AlertStatus.DISMISSED.value)

LEVEL_TITLES = {
    AlertType.OUT_OF_STOCK: "Out of stock",
    AlertType.EXPIRED: "Expired",
    AlertType.EXPIRY_CRITICAL: "Expires very soon",
    AlertType.EXPIRY_WARNING: "Expiring soon",
    AlertType.CRITICAL_STOCK: "Critical stock",
    AlertType.LOW_STOCK: "Low stock",
}


@dataclass
class ReconcileOutcome:
    stock_id: int
    level: StockLevel
    created: List[Alert] = field(default_factory=list)
    auto_resolved: List[Alert] = field(default_factory=list)


@dataclass
class SweepSummary:
    checked: int = 0
    created: int = 0
    auto_resolved: int = 0


@dataclass
class BulkOutcome:
    succeeded: List[int] = field(default_factory=list)
    failed: List[Dict] = field(default_factory=list)


def alert_type_for(level: StockLevel, days_left: Optional[int]) -> Optional[AlertType]:
    """The single alert type describing ``level``; None for normal."""
    if level == StockLevel.OUT_OF_STOCK:
        return AlertType.OUT_OF_STOCK
    if level == StockLevel.EXPIRED:
        return AlertType.EXPIRED
    if level == StockLevel.EXPIRING:
        if days_left is not None and days_left <= settings.expiry_critical_days:
            return AlertType.EXPIRY_CRITICAL
        return AlertType.EXPIRY_WARNING
    if level == StockLevel.CRITICAL:
        return AlertType.CRITICAL_STOCK
    if level == StockLevel.LOW:
        return AlertType.LOW_STOCK
    return None


def snapshot(stock: StockItem, alert_type: AlertType, days_left: Optional[int]) -> Tuple[Decimal, Decimal]:
    """(current_value, threshold_value) recorded on a new condition alert."""
    if alert_type == AlertType.EXPIRED:
        return Decimal(days_left or 0), Decimal("0")
    if alert_type == AlertType.EXPIRY_CRITICAL:
        return Decimal(days_left), Decimal(settings.expiry_critical_days)
    if alert_type == AlertType.EXPIRY_WARNING:
        return Decimal(days_left), Decimal(settings.expiry_warning_days)
    if alert_type == AlertType.CRITICAL_STOCK:
        return stock.current_stock, stock.critical_stock_level
    if alert_type == AlertType.LOW_STOCK:
        return stock.current_stock, stock.min_stock_level
    return stock.current_stock, Decimal("0")


def _condition_message(stock: StockItem, alert_type: AlertType, current: Decimal, threshold: Decimal) -> str:
    if alert_type == AlertType.EXPIRED:
        return f"{stock.name} expired on {stock.expiry_date.isoformat()}"
    if alert_type in (AlertType.EXPIRY_WARNING, AlertType.EXPIRY_CRITICAL):
        return f"{stock.name} expires on {stock.expiry_date.isoformat()} ({int(current)} days left)"
    if alert_type == AlertType.OUT_OF_STOCK:
        return f"{stock.name} is out of stock"
    return f"{stock.name}: {current} {stock.unit} left (threshold {threshold} {stock.unit})"


class AlertEngine:
    """Creates, closes and queries alerts."""

    def __init__(self, db: Session, bus: Optional[EventBus] = None):
        self.db = db
        self.bus = bus if bus is not None else event_bus

    # ===== RECONCILIATION =====

    def _reconcile_item(self, stock: StockItem, now: Union[date, datetime, None] = None) -> ReconcileOutcome:
        level = classify(stock, now)
        days_left = days_until_expiry(stock.expiry_date, now)
        # Deactivated items carry no open condition alerts
        target = alert_type_for(level, days_left) if stock.is_active else None
        outcome = ReconcileOutcome(stock_id=stock.id, level=level)

        active = (
            self.db.query(Alert)
            .filter(
                Alert.stock_item_id == stock.id,
                Alert.status == AlertStatus.ACTIVE.value,
                Alert.type.in_(CONDITION_TYPE_VALUES),
            )
            .all()
        )

        timestamp = utcnow()
        if level == StockLevel.NORMAL:
            self._clear_acknowledgement(stock.id, timestamp)

        for alert in active:
            if target is not None and alert.type == target.value:
                continue
            alert.status = AlertStatus.AUTO_RESOLVED.value
            alert.resolved_at = timestamp
            alert.resolution_notes = f"Condition cleared; item is now {level.value}"
            outcome.auto_resolved.append(alert)

        if (
            target is not None
            and not any(a.type == target.value for a in active)
            and not self._acknowledged(stock.id, target)
        ):
            current, threshold = snapshot(stock, target, days_left)
            alert = Alert(
                stock_item_id=stock.id,
                clinic_id=stock.clinic_id,
                type=target.value,
                severity=SEVERITY_BY_TYPE[target].value,
                status=AlertStatus.ACTIVE.value,
                title=f"{LEVEL_TITLES[target]}: {stock.name}",
                message=_condition_message(stock, target, current, threshold),
                current_value=current,
                threshold_value=threshold,
                expiry_date=stock.expiry_date,
                days_until_expiry=days_left,
            )
            self.db.add(alert)
            outcome.created.append(alert)

        return outcome

    def _latest_condition_alert(self, stock_id: int) -> Optional[Alert]:
        return (
            self.db.query(Alert)
            .filter(Alert.stock_item_id == stock_id, Alert.type.in_(CONDITION_TYPE_VALUES))
            .order_by(Alert.id.desc())
            .first()
        )

    def _acknowledged(self, stock_id: int, alert_type: AlertType) -> bool:
        """True when people closed the item's latest condition alert and it is of ``alert_type``.

        The condition has not changed since, so raising it again would undo
        their resolve or dismiss. Any other condition in between, or a return
        to normal, re-arms it.
        """
        latest = self._latest_condition_alert(stock_id)
        return (
            latest is not None
            and latest.type == alert_type.value
            and latest.status in HUMAN_CLOSED
            and latest.cleared_at is None
        )

    def _clear_acknowledgement(self, stock_id: int, timestamp: datetime) -> None:
        latest = self._latest_condition_alert(stock_id)
        if latest is not None and latest.status in HUMAN_CLOSED and latest.cleared_at is None:
            latest.cleared_at = timestamp
            logger.debug(f"Stock {stock_id} back to normal; {latest.type} may be raised again")

    def reconcile(self, stock_id: int, now: Union[date, datetime, None] = None) -> ReconcileOutcome:
        """Bring one item's condition alerts in line with its current level."""
        # A concurrent reconcile may insert the same alert first; the unique
        # index rejects ours and the second pass sees theirs
        for attempt in range(2):
            stock = self.db.get(StockItem, stock_id, populate_existing=True)
            if stock is None:
                raise NotFoundError("StockItem", stock_id)
            outcome = self._reconcile_item(stock, now)
            try:
                self.db.flush()
            except IntegrityError:
                self.db.rollback()
                logger.info(f"Concurrent alert insert for stock {stock_id}, re-reconciling")
                continue
            events = self._outcome_events(outcome)
            self.db.commit()
            break
        else:
            raise InvalidStateError(f"Could not reconcile alerts for stock {stock_id}")

        if outcome.created or outcome.auto_resolved:
            logger.info(
                f"Reconciled stock {stock_id} at level {outcome.level.value}: "
                f"created {[a.type for a in outcome.created]}, "
                f"auto-resolved {[a.type for a in outcome.auto_resolved]}"
            )
        self._publish(events)
        return outcome

    def sweep(self, clinic_id: Optional[int] = None, now: Union[date, datetime, None] = None) -> SweepSummary:
        """Reconcile every active item plus deactivated items with open alerts."""
        open_alert_items = (
            self.db.query(Alert.stock_item_id)
            .filter(
                Alert.status == AlertStatus.ACTIVE.value,
                Alert.type.in_(CONDITION_TYPE_VALUES),
                Alert.stock_item_id.isnot(None),
            )
        )
        query = self.db.query(StockItem.id).filter(
            or_(StockItem.is_active.is_(True), StockItem.id.in_(open_alert_items))
        )
        if clinic_id is not None:
            query = query.filter(StockItem.clinic_id == clinic_id)
        stock_ids = [row[0] for row in query.order_by(StockItem.id).all()]

        summary = SweepSummary()
        for stock_id in stock_ids:
            outcome = self.reconcile(stock_id, now)
            summary.checked += 1
            summary.created += len(outcome.created)
            summary.auto_resolved += len(outcome.auto_resolved)

        logger.info(
            f"Alert sweep checked {summary.checked} items: "
            f"{summary.created} created, {summary.auto_resolved} auto-resolved"
        )
        return summary

    # ===== WORKFLOW ALERTS =====

    def on_request_transition(self, event: RequestTransitioned) -> None:
        """Keep stock_request / stock_transfer alerts in step with a request."""
        events: List[DomainEvent] = []
        timestamp = utcnow()

        if event.old_status == StockRequestStatus.PENDING.value:
            open_alerts = (
                self.db.query(Alert)
                .filter(
                    Alert.stock_request_id == event.request_id,
                    Alert.type == AlertType.STOCK_REQUEST.value,
                    Alert.status == AlertStatus.ACTIVE.value,
                )
                .all()
            )
            for alert in open_alerts:
                alert.status = AlertStatus.AUTO_RESOLVED.value
                alert.resolved_at = timestamp
                alert.resolution_notes = f"Request {event.new_status}"
                events.append(AlertClosed(alert_id=alert.id, status=alert.status))

        request = self.db.get(StockRequest, event.request_id)
        new_alert = None
        if request is not None and event.new_status == StockRequestStatus.PENDING.value:
            new_alert = Alert(
                type=AlertType.STOCK_REQUEST.value,
                severity=SEVERITY_BY_TYPE[AlertType.STOCK_REQUEST].value,
                status=AlertStatus.ACTIVE.value,
                clinic_id=event.source_clinic_id,
                stock_request_id=request.id,
                title=f"Stock request #{request.id}: {request.stock_name}",
                message=(
                    f"{request.requester_clinic_name} requests {request.requested_quantity} "
                    f"of {request.stock_name}"
                ),
                current_value=request.requested_quantity,
            )
        elif request is not None and event.new_status == StockRequestStatus.COMPLETED.value:
            new_alert = Alert(
                type=AlertType.STOCK_TRANSFER.value,
                severity=SEVERITY_BY_TYPE[AlertType.STOCK_TRANSFER].value,
                status=AlertStatus.ACTIVE.value,
                clinic_id=event.requester_clinic_id,
                stock_item_id=request.destination_stock_id,
                stock_request_id=request.id,
                title=f"Stock transfer received: {request.stock_name}",
                message=(
                    f"{request.approved_quantity} of {request.stock_name} received from "
                    f"{request.requested_from_clinic_name}"
                ),
                current_value=request.approved_quantity,
            )
        if new_alert is not None:
            self.db.add(new_alert)

        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.exception(f"Could not record alerts for request {event.request_id} ({event.new_status})")
            return
        if new_alert is not None:
            events.append(self._created_event(new_alert))
        self.db.commit()
        self._publish(events)

    # ===== USER ACTIONS =====

    def get_alert(self, alert_id: int) -> Alert:
        alert = self.db.get(Alert, alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id)
        return alert

    def create_alert(self, data: AlertCreate) -> Alert:
        """Raise an alert by hand. Severity defaults from the type."""
        clinic_id = data.clinic_id
        if data.stock_item_id is not None:
            stock = self.db.get(StockItem, data.stock_item_id)
            if stock is None:
                raise NotFoundError("StockItem", data.stock_item_id)
            clinic_id = clinic_id or stock.clinic_id
        if clinic_id is not None and self.db.get(Clinic, clinic_id) is None:
            raise NotFoundError("Clinic", clinic_id)
        if data.stock_request_id is not None and self.db.get(StockRequest, data.stock_request_id) is None:
            raise NotFoundError("StockRequest", data.stock_request_id)

        severity = data.severity or SEVERITY_BY_TYPE[data.type]
        alert = Alert(
            type=data.type.value,
            severity=severity.value,
            status=AlertStatus.ACTIVE.value,
            title=data.title,
            message=data.message,
            stock_item_id=data.stock_item_id,
            clinic_id=clinic_id,
            stock_request_id=data.stock_request_id,
            current_value=data.current_value,
            threshold_value=data.threshold_value,
        )
        self.db.add(alert)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise InvalidStateError(
                f"An active {data.type.value} alert already exists for stock {data.stock_item_id}",
                stock_item_id=data.stock_item_id,
                type=data.type.value,
            )
        event = self._created_event(alert)
        self.db.commit()
        logger.info(f"Alert {alert.id} ({alert.type}/{alert.severity}) created manually")
        self._publish([event])
        return alert

    def _close(self, alert_id: int, status: AlertStatus, actor: Optional[str], notes: Optional[str]) -> Alert:
        alert = self.get_alert(alert_id)
        if alert.status != AlertStatus.ACTIVE.value:
            raise InvalidStateError(
                f"Alert {alert_id} is {alert.status}; only active alerts can be {status.value}",
                id=alert_id,
                status=alert.status,
            )
        timestamp = utcnow()
        alert.status = status.value
        alert.resolved_by = actor
        if notes is not None:
            alert.resolution_notes = notes
        if status == AlertStatus.DISMISSED:
            alert.dismissed_at = timestamp
        else:
            alert.resolved_at = timestamp
        self.db.commit()
        logger.info(f"Alert {alert_id} {status.value} by {actor or 'unknown'}")
        self._publish([AlertClosed(alert_id=alert_id, status=status.value)])
        return alert

    def resolve(self, alert_id: int, resolved_by: str, notes: Optional[str] = None) -> Alert:
        return self._close(alert_id, AlertStatus.RESOLVED, resolved_by, notes)

    def dismiss(self, alert_id: int, dismissed_by: Optional[str] = None, notes: Optional[str] = None) -> Alert:
        return self._close(alert_id, AlertStatus.DISMISSED, dismissed_by, notes)

    def delete_alert(self, alert_id: int) -> None:
        alert = self.get_alert(alert_id)
        self.db.delete(alert)
        self.db.commit()
        logger.info(f"Alert {alert_id} deleted")

    def _bulk(self, ids: List[int], action: Callable[[int], object]) -> BulkOutcome:
        """Apply ``action`` to each id in its own transaction; collect failures."""
        outcome = BulkOutcome()
        for alert_id in dict.fromkeys(ids):
            try:
                action(alert_id)
            except DomainError as exc:
                self.db.rollback()
                outcome.failed.append({"id": alert_id, **error_summary(exc)})
            else:
                outcome.succeeded.append(alert_id)
        return outcome

    def bulk_resolve(self, ids: List[int], resolved_by: str, notes: Optional[str] = None) -> BulkOutcome:
        return self._bulk(ids, lambda alert_id: self.resolve(alert_id, resolved_by, notes))

    def bulk_dismiss(self, ids: List[int], dismissed_by: Optional[str] = None) -> BulkOutcome:
        return self._bulk(ids, lambda alert_id: self.dismiss(alert_id, dismissed_by))

    def bulk_delete(self, ids: List[int]) -> BulkOutcome:
        return self._bulk(ids, self.delete_alert)

    # ===== QUERIES =====

    def list_alerts(
        self,
        type: Optional[str] = None,
        severity: Optional[str] = None,
        status: Optional[str] = None,
        clinic_id: Optional[int] = None,
        stock_id: Optional[int] = None,
        is_resolved: Optional[bool] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Alert], int]:
        query = self.db.query(Alert)
        if type:
            query = query.filter(Alert.type == type)
        if severity:
            query = query.filter(Alert.severity == severity)
        if status:
            query = query.filter(Alert.status == status)
        if clinic_id is not None:
            query = query.filter(Alert.clinic_id == clinic_id)
        if stock_id is not None:
            query = query.filter(Alert.stock_item_id == stock_id)
        if is_resolved is True:
            query = query.filter(Alert.status != AlertStatus.ACTIVE.value)
        elif is_resolved is False:
            query = query.filter(Alert.status == AlertStatus.ACTIVE.value)
        if date_from:
            query = query.filter(Alert.created_at >= date_from)
        if date_to:
            query = query.filter(Alert.created_at <= date_to)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(Alert.title.ilike(pattern), Alert.message.ilike(pattern)))

        total = query.count()
        items = query.order_by(Alert.created_at.desc(), Alert.id.desc()).offset(skip).limit(limit).all()
        return items, total

    def active_alerts(self, clinic_id: Optional[int] = None) -> List[Alert]:
        query = self.db.query(Alert).filter(Alert.status == AlertStatus.ACTIVE.value)
        if clinic_id is not None:
            query = query.filter(Alert.clinic_id == clinic_id)
        return query.order_by(Alert.created_at.desc(), Alert.id.desc()).all()

    def pending_count(self, clinic_id: Optional[int] = None) -> int:
        query = self.db.query(func.count(Alert.id)).filter(Alert.status == AlertStatus.ACTIVE.value)
        if clinic_id is not None:
            query = query.filter(Alert.clinic_id == clinic_id)
        return query.scalar() or 0

    def stats(self, clinic_id: Optional[int] = None) -> Dict:
        def grouped(column):
            query = self.db.query(column, func.count(Alert.id))
            if clinic_id is not None:
                query = query.filter(Alert.clinic_id == clinic_id)
            return {key: count for key, count in query.group_by(column).all()}

        by_status = grouped(Alert.status)
        active_query = self.db.query(Alert.severity, func.count(Alert.id)).filter(
            Alert.status == AlertStatus.ACTIVE.value
        )
        if clinic_id is not None:
            active_query = active_query.filter(Alert.clinic_id == clinic_id)
        by_severity = {s.value: 0 for s in AlertSeverity}
        by_severity.update({key: count for key, count in active_query.group_by(Alert.severity).all()})

        return {
            "total": sum(by_status.values()),
            "active": by_status.get(AlertStatus.ACTIVE.value, 0),
            "resolved": by_status.get(AlertStatus.RESOLVED.value, 0),
            "dismissed": by_status.get(AlertStatus.DISMISSED.value, 0),
            "auto_resolved": by_status.get(AlertStatus.AUTO_RESOLVED.value, 0),
            "by_severity": by_severity,
            "by_type": grouped(Alert.type),
        }

    # ===== EVENTS =====

    @staticmethod
    def _created_event(alert: Alert) -> AlertCreated:
        return AlertCreated(alert_id=alert.id, stock_id=alert.stock_item_id, type=alert.type, severity=alert.severity)

    def _outcome_events(self, outcome: ReconcileOutcome) -> List[DomainEvent]:
        events: List[DomainEvent] = [AlertClosed(alert_id=a.id, status=a.status) for a in outcome.auto_resolved]
        events.extend(self._created_event(a) for a in outcome.created)
        return events

    def _publish(self, events: List[DomainEvent]) -> None:
        for event in events:
            self.bus.publish(event)


def register_alert_engine(bus: EventBus, session_factory: Callable[[], Session]) -> List[Tuple[type, Callable]]:
    """Subscribe the engine to ledger, catalog and workflow events.

    Each handler runs in its own session so it never shares a transaction
    with the producer. Returns the (event type, handler) pairs subscribed.
    """

    def reconcile_stock(event) -> None:
        with session_factory() as db:
            AlertEngine(db, bus).reconcile(event.stock_id)

    def track_request(event: RequestTransitioned) -> None:
        with session_factory() as db:
            AlertEngine(db, bus).on_request_transition(event)

    subscriptions = [
        (StockQuantityChanged, reconcile_stock),
        (StockDetailsChanged, reconcile_stock),
        (RequestTransitioned, track_request),
    ]
    for event_type, handler in subscriptions:
        bus.subscribe(event_type, handler)
    logger.info("Alert engine subscribed to stock and request events")
    return subscriptions
