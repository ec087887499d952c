"""Read-only reports over the ledger, transfer requests and alerts.

Every report takes an optional period; it defaults to the last 30 days
ending now. Figures are aggregated in Python and returned as plain dicts
ready for JSON, with quantities and money rounded to two places.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

from medstock.core.exceptions import ValidationError
from medstock.db.base import utcnow
from medstock.models.alert import Alert, AlertSeverity, AlertStatus
from medstock.models.clinic import Clinic
from medstock.models.stock import LedgerOperation, OperationKind, StockItem
from medstock.models.stock_request import StockRequest, StockRequestStatus
from medstock.models.supplier import Supplier
from medstock.services.stock_service import StockService
from medstock.services.threshold_classifier import StockLevel, classify, days_until_expiry
from medstock.services.transfer_workflow import TransferWorkflow

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_DAYS = 30

OUTBOUND_KINDS = (OperationKind.USAGE.value, OperationKind.TRANSFER_OUT.value)
ADJUSTMENT_KINDS = (OperationKind.ADJUSTMENT_INCREASE.value, OperationKind.ADJUSTMENT_DECREASE.value)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values (as SQLite returns them) are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_period(start: Optional[datetime], end: Optional[datetime]) -> Tuple[datetime, datetime]:
    end = as_utc(end) or utcnow()
    start = as_utc(start) or end - timedelta(days=DEFAULT_PERIOD_DAYS)
    if start > end:
        raise ValidationError("start_date must not be after end_date", field="start_date")
    return start, end


def direction_of(kind: str) -> str:
    if kind in ADJUSTMENT_KINDS:
        return "adjustment"
    return "out" if kind in OUTBOUND_KINDS else "in"


def _num(value) -> float:
    return round(float(value or 0), 2)


def _hours(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return (as_utc(end) - as_utc(start)).total_seconds() / 3600


def _mean(values: Iterable[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return round(sum(present) / len(present), 2)


def _period(start: datetime, end: datetime) -> Dict[str, str]:
    return {"start": start.isoformat(), "end": end.isoformat()}


class ReportService:
    """Aggregated views for dashboards and exports."""

    def __init__(self, db: Session):
        self.db = db

    # ===== HELPERS =====

    def _operations(
        self,
        start: datetime,
        end: datetime,
        clinic_id: Optional[int] = None,
        kinds: Optional[Iterable[str]] = None,
        category: Optional[str] = None,
    ) -> List[LedgerOperation]:
        query = (
            self.db.query(LedgerOperation)
            .join(StockItem, LedgerOperation.stock_item_id == StockItem.id)
            .options(joinedload(LedgerOperation.stock_item))
            .filter(LedgerOperation.created_at >= start, LedgerOperation.created_at <= end)
        )
        if clinic_id is not None:
            query = query.filter(StockItem.clinic_id == clinic_id)
        if kinds is not None:
            query = query.filter(LedgerOperation.kind.in_(list(kinds)))
        if category:
            query = query.filter(StockItem.category == category)
        return query.order_by(LedgerOperation.created_at, LedgerOperation.id).all()

    def _usage_by_item(self, start: datetime, end: datetime, clinic_id: Optional[int]) -> Dict[int, Dict[str, Any]]:
        usage: Dict[int, Dict[str, Any]] = {}
        for op in self._operations(start, end, clinic_id, kinds=[OperationKind.USAGE.value]):
            stock = op.stock_item
            entry = usage.setdefault(stock.id, {
                "stock_id": stock.id,
                "name": stock.name,
                "unit": stock.unit,
                "category": stock.category,
                "clinic_id": stock.clinic_id,
                "quantity": Decimal("0"),
                "uses": 0,
            })
            entry["quantity"] += -op.delta
            entry["uses"] += 1
        return usage

    # ===== DASHBOARD =====

    def dashboard_summary(self, clinic_id: Optional[int] = None) -> Dict[str, Any]:
        """Headline counts for the landing dashboard."""
        stock_stats = StockService(self.db).stats(clinic_id)

        alerts = self.db.query(Alert.severity, func.count(Alert.id)).filter(Alert.status == AlertStatus.ACTIVE.value)
        if clinic_id is not None:
            alerts = alerts.filter(Alert.clinic_id == clinic_id)
        active_by_severity = {key: count for key, count in alerts.group_by(Alert.severity).all()}

        midnight = datetime.combine(utcnow().date(), time.min, tzinfo=timezone.utc)
        closed_today = self.db.query(func.count(Alert.id)).filter(
            Alert.status != AlertStatus.ACTIVE.value,
            or_(Alert.resolved_at >= midnight, Alert.dismissed_at >= midnight),
        )
        if clinic_id is not None:
            closed_today = closed_today.filter(Alert.clinic_id == clinic_id)

        clinics = self.db.query(Clinic.is_active, func.count(Clinic.id)).group_by(Clinic.is_active).all()
        suppliers = self.db.query(Supplier.is_active, func.count(Supplier.id)).group_by(Supplier.is_active).all()

        return {
            "generated_at": utcnow().isoformat(),
            "stocks": {
                "total_items": stock_stats["total_items"],
                "total_value": _num(stock_stats["total_value"]),
                "low_stock_items": stock_stats["low_stock_items"],
                "critical_stock_items": stock_stats["critical_stock_items"],
                "out_of_stock_items": stock_stats["out_of_stock_items"],
                "expiring_items": stock_stats["expiring_items"],
                "expired_items": stock_stats["expired_items"],
            },
            "clinics": {
                "total": sum(count for _, count in clinics),
                "active": sum(count for active, count in clinics if active),
            },
            "suppliers": {
                "total": sum(count for _, count in suppliers),
                "active": sum(count for active, count in suppliers if active),
            },
            "alerts": {
                "active": sum(active_by_severity.values()),
                "critical": active_by_severity.get(AlertSeverity.CRITICAL.value, 0),
                "high": active_by_severity.get(AlertSeverity.HIGH.value, 0),
                "resolved_today": closed_today.scalar() or 0,
            },
            "requests": TransferWorkflow(self.db).stats(clinic_id),
        }

    # ===== STOCK REPORTS =====

    def movements(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        clinic_id: Optional[int] = None,
        kind: Optional[OperationKind] = None,
        limit: int = 100,
    ) -> Dict[str, Any]:
        """Ledger operations in the period, newest first, with in/out totals."""
        start, end = resolve_period(start, end)
        kinds = [kind.value] if kind is not None else None
        operations = self._operations(start, end, clinic_id, kinds=kinds)

        inbound = sum((op.delta for op in operations if direction_of(op.kind) == "in"), Decimal("0"))
        outbound = sum((-op.delta for op in operations if direction_of(op.kind) == "out"), Decimal("0"))
        adjustments = sum((op.delta for op in operations if direction_of(op.kind) == "adjustment"), Decimal("0"))
        by_kind = Counter(op.kind for op in operations)

        rows = [
            {
                "id": op.id,
                "stock_id": op.stock_item_id,
                "stock_name": op.stock_item.name,
                "clinic_id": op.stock_item.clinic_id,
                "kind": op.kind,
                "direction": direction_of(op.kind),
                "quantity": _num(abs(op.delta)),
                "quantity_before": _num(op.quantity_before),
                "quantity_after": _num(op.quantity_after),
                "reason": op.reason,
                "performed_by": op.performed_by,
                "created_at": as_utc(op.created_at).isoformat(),
            }
            for op in reversed(operations[-limit:])
        ]

        return {
            "period": _period(start, end),
            "summary": {
                "total_movements": len(operations),
                "inbound_quantity": _num(inbound),
                "outbound_quantity": _num(outbound),
                "net_adjustment": _num(adjustments),
                "by_kind": dict(by_kind),
            },
            "movements": rows,
        }

    def usage_trends(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        clinic_id: Optional[int] = None,
        category: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Daily consumed quantity, with a per-category split for each day."""
        start, end = resolve_period(start, end)
        operations = self._operations(start, end, clinic_id, kinds=[OperationKind.USAGE.value], category=category)

        days: Dict[str, Dict[str, Any]] = {}
        totals_by_category: Dict[str, Decimal] = defaultdict(Decimal)
        for op in operations:
            day = as_utc(op.created_at).strftime("%Y-%m-%d")
            quantity = -op.delta
            entry = days.setdefault(day, {"quantity": Decimal("0"), "operations": 0, "by_category": defaultdict(Decimal)})
            entry["quantity"] += quantity
            entry["operations"] += 1
            entry["by_category"][op.stock_item.category] += quantity
            totals_by_category[op.stock_item.category] += quantity

        # Days without usage are left out
        trend = [
            {
                "date": day,
                "quantity": _num(data["quantity"]),
                "operations": data["operations"],
                "by_category": {name: _num(q) for name, q in sorted(data["by_category"].items())},
            }
            for day, data in sorted(days.items())
        ]
        total = sum(totals_by_category.values(), Decimal("0"))
        active_days = len(trend)

        return {
            "period": _period(start, end),
            "summary": {
                "total_quantity": _num(total),
                "total_operations": len(operations),
                "active_days": active_days,
                "average_daily_quantity": _num(total / active_days) if active_days else 0.0,
            },
            "by_category": {name: _num(q) for name, q in sorted(totals_by_category.items())},
            "trend": trend,
        }

    def usage_ranking(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        clinic_id: Optional[int] = None,
        limit: int = 10,
        least: bool = False,
    ) -> Dict[str, Any]:
        """Items ordered by consumed quantity.

        The least-used ranking covers every active item, so items with no
        usage in the period come first with a quantity of zero.
        """
        start, end = resolve_period(start, end)
        usage = self._usage_by_item(start, end, clinic_id)

        if least:
            for stock in StockService(self.db)._active_items(clinic_id).all():
                usage.setdefault(stock.id, {
                    "stock_id": stock.id,
                    "name": stock.name,
                    "unit": stock.unit,
                    "category": stock.category,
                    "clinic_id": stock.clinic_id,
                    "quantity": Decimal("0"),
                    "uses": 0,
                })
            ordered = sorted(usage.values(), key=lambda e: (e["quantity"], e["stock_id"]))
        else:
            ordered = sorted(usage.values(), key=lambda e: (-e["quantity"], e["stock_id"]))

        items = [dict(entry, quantity=_num(entry["quantity"])) for entry in ordered[:limit]]
        return {"period": _period(start, end), "items": items}

    def expiry_analysis(self, clinic_id: Optional[int] = None, days: int = 30) -> Dict[str, Any]:
        """Expired and soon-expiring active items with the value at risk."""
        items = StockService(self.db).expiring_stock(days=days, clinic_id=clinic_id)

        expired, expiring = [], []
        for stock in items:
            left = days_until_expiry(stock.expiry_date)
            row = {
                "stock_id": stock.id,
                "name": stock.name,
                "clinic_id": stock.clinic_id,
                "category": stock.category,
                "expiry_date": stock.expiry_date.isoformat(),
                "days_until_expiry": left,
                "current_stock": _num(stock.current_stock),
                "value": _num(stock.stock_value),
            }
            (expired if left <= 0 else expiring).append(row)

        return {
            "window_days": days,
            "summary": {
                "expired_count": len(expired),
                "expired_value": _num(sum(r["value"] for r in expired)),
                "expiring_count": len(expiring),
                "expiring_value": _num(sum(r["value"] for r in expiring)),
            },
            "expired": expired,
            "expiring_soon": expiring,
        }

    def category_analysis(
        self,
        clinic_id: Optional[int] = None,
        category: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Per-category stock, value, level counts and usage in the period."""
        start, end = resolve_period(start, end)
        query = StockService(self.db)._active_items(clinic_id)
        if category:
            query = query.filter(StockItem.category == category)

        categories: Dict[str, Dict[str, Any]] = {}
        for stock in query.all():
            entry = categories.setdefault(stock.category, {
                "name": stock.category,
                "item_count": 0,
                "total_stock": Decimal("0"),
                "total_value": Decimal("0"),
                "low_stock_count": 0,
                "critical_stock_count": 0,
                "out_of_stock_count": 0,
                "usage": Decimal("0"),
            })
            level = classify(stock)
            entry["item_count"] += 1
            entry["total_stock"] += stock.current_stock
            entry["total_value"] += stock.stock_value
            if level == StockLevel.LOW:
                entry["low_stock_count"] += 1
            elif level == StockLevel.CRITICAL:
                entry["critical_stock_count"] += 1
            elif level == StockLevel.OUT_OF_STOCK:
                entry["out_of_stock_count"] += 1

        for entry in self._usage_by_item(start, end, clinic_id).values():
            if entry["category"] in categories:
                categories[entry["category"]]["usage"] += entry["quantity"]

        return {
            "period": _period(start, end),
            "categories": [
                dict(entry, total_stock=_num(entry["total_stock"]), total_value=_num(entry["total_value"]),
                     usage=_num(entry["usage"]))
                for _, entry in sorted(categories.items())
            ],
        }

    # ===== CLINIC REPORTS =====

    def clinic_consumption(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        """Consumed quantity and value per clinic, busiest first."""
        start, end = resolve_period(start, end)
        operations = self._operations(start, end, kinds=[OperationKind.USAGE.value])
        names = dict(self.db.query(Clinic.id, Clinic.name).all())

        clinics: Dict[int, Dict[str, Any]] = {}
        for op in operations:
            stock = op.stock_item
            quantity = -op.delta
            entry = clinics.setdefault(stock.clinic_id, {
                "quantity": Decimal("0"),
                "value": Decimal("0"),
                "operations": 0,
                "items": set(),
                "categories": defaultdict(Decimal),
            })
            entry["quantity"] += quantity
            entry["value"] += quantity * (stock.purchase_price or Decimal("0"))
            entry["operations"] += 1
            entry["items"].add(stock.id)
            entry["categories"][stock.category] += quantity

        rows = []
        for clinic_id, entry in clinics.items():
            top = sorted(entry["categories"].items(), key=lambda kv: (-kv[1], kv[0]))[:3]
            rows.append({
                "clinic_id": clinic_id,
                "clinic_name": names.get(clinic_id),
                "total_quantity": _num(entry["quantity"]),
                "total_value": _num(entry["value"]),
                "operations": entry["operations"],
                "distinct_items": len(entry["items"]),
                "top_categories": [{"category": name, "quantity": _num(q)} for name, q in top],
            })
        rows.sort(key=lambda r: (-r["total_quantity"], r["clinic_id"]))

        return {
            "period": _period(start, end),
            "summary": {
                "clinics": len(rows),
                "total_quantity": _num(sum(r["total_quantity"] for r in rows)),
                "total_value": _num(sum(r["total_value"] for r in rows)),
            },
            "clinics": rows,
        }

    # ===== TRANSFER REPORTS =====

    def transfer_analysis(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        clinic_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Request volumes, turnaround times and per-clinic activity."""
        start, end = resolve_period(start, end)
        query = self.db.query(StockRequest).filter(
            StockRequest.requested_at >= start, StockRequest.requested_at <= end
        )
        if clinic_id is not None:
            query = query.filter(or_(
                StockRequest.requester_clinic_id == clinic_id,
                StockRequest.requested_from_clinic_id == clinic_id,
            ))
        requests = query.order_by(StockRequest.id).all()

        by_status = {s.value: 0 for s in StockRequestStatus}
        by_status.update(Counter(r.status for r in requests))
        completed = [r for r in requests if r.status == StockRequestStatus.COMPLETED.value]

        decision_hours = [_hours(r.requested_at, r.approved_at or r.rejected_at) for r in requests]
        completion_hours = [_hours(r.approved_at, r.completed_at) for r in completed]

        most_requested = Counter((r.stock_id, r.stock_name) for r in requests).most_common(5)

        activity: Dict[int, Dict[str, Any]] = {}

        def clinic_entry(cid: int, name: Optional[str]) -> Dict[str, Any]:
            return activity.setdefault(cid, {
                "clinic_id": cid, "clinic_name": name, "sent": 0, "received": 0,
                "approved": 0, "rejected": 0,
            })

        for r in requests:
            clinic_entry(r.requester_clinic_id, r.requester_clinic_name)["sent"] += 1
            supplier_side = clinic_entry(r.requested_from_clinic_id, r.requested_from_clinic_name)
            supplier_side["received"] += 1
            if r.status in (StockRequestStatus.APPROVED.value, StockRequestStatus.COMPLETED.value):
                supplier_side["approved"] += 1
            elif r.status == StockRequestStatus.REJECTED.value:
                supplier_side["rejected"] += 1
        for entry in activity.values():
            decided = entry["approved"] + entry["rejected"]
            entry["approval_rate"] = round(entry["approved"] / decided * 100, 1) if decided else None

        return {
            "period": _period(start, end),
            "summary": {
                "total_requests": len(requests),
                "total_transferred": _num(sum((r.approved_quantity or 0 for r in completed), Decimal("0"))),
                "average_decision_hours": _mean(decision_hours),
                "average_completion_hours": _mean(completion_hours),
            },
            "by_status": by_status,
            "most_requested": [
                {"stock_id": stock_id, "name": name, "requests": count}
                for (stock_id, name), count in most_requested
            ],
            "clinics": sorted(activity.values(), key=lambda e: e["clinic_id"]),
        }

    # ===== ALERT REPORTS =====

    def _alerts(self, start: datetime, end: datetime, clinic_id: Optional[int]) -> List[Alert]:
        query = self.db.query(Alert).filter(Alert.created_at >= start, Alert.created_at <= end)
        if clinic_id is not None:
            query = query.filter(Alert.clinic_id == clinic_id)
        return query.order_by(Alert.id).all()

    def alert_resolution_times(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        clinic_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """How long alerts raised in the period stayed open before closing."""
        start, end = resolve_period(start, end)
        alerts = self._alerts(start, end, clinic_id)
        closed = [a for a in alerts if a.status != AlertStatus.ACTIVE.value]

        by_type: Dict[str, List[Optional[float]]] = defaultdict(list)
        by_status: Dict[str, List[Optional[float]]] = defaultdict(list)
        for alert in closed:
            hours = _hours(alert.created_at, alert.resolved_at or alert.dismissed_at)
            by_type[alert.type].append(hours)
            by_status[alert.status].append(hours)

        def summarize(groups: Dict[str, List[Optional[float]]]) -> Dict[str, Dict[str, Any]]:
            return {key: {"count": len(values), "average_hours": _mean(values)} for key, values in sorted(groups.items())}

        return {
            "period": _period(start, end),
            "summary": {
                "raised": len(alerts),
                "closed": len(closed),
                "still_active": len(alerts) - len(closed),
                "average_hours": _mean(h for values in by_type.values() for h in values),
            },
            "by_type": summarize(by_type),
            "by_status": summarize(by_status),
        }

    def recurring_alerts(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        clinic_id: Optional[int] = None,
        min_count: int = 2,
    ) -> Dict[str, Any]:
        """Stock items that raised the same alert type repeatedly in the period."""
        start, end = resolve_period(start, end)
        groups = Counter(
            (a.stock_item_id, a.type) for a in self._alerts(start, end, clinic_id) if a.stock_item_id is not None
        )
        names = dict(
            self.db.query(StockItem.id, StockItem.name)
            .filter(StockItem.id.in_(sorted({stock_id for stock_id, _ in groups})))
            .all()
        ) if groups else {}

        items = [
            {"stock_id": stock_id, "name": names.get(stock_id), "type": alert_type, "count": count}
            for (stock_id, alert_type), count in groups.items()
            if count >= min_count
        ]
        items.sort(key=lambda e: (-e["count"], e["stock_id"], e["type"]))
        return {"period": _period(start, end), "min_count": min_count, "items": items}
