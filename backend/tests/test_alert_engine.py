"""Tests for alert reconciliation, user actions and alert queries."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from medstock.core.events import EventBus
from medstock.core.exceptions import InvalidStateError, NotFoundError
from medstock.models.alert import Alert, AlertStatus, AlertType
from medstock.models.stock import StockItem
from medstock.schemas.alert import AlertCreate
from medstock.services.alert_engine import AlertEngine
from medstock.services.stock_ledger import StockLedger
from medstock.services.stock_service import StockService
from medstock.services.threshold_classifier import StockLevel, today


def alerts_for(db: Session, stock_id: int, status: str = None):
    db.expire_all()
    query = db.query(Alert).filter(Alert.stock_item_id == stock_id)
    if status:
        query = query.filter(Alert.status == status)
    return query.order_by(Alert.id).all()


def manual_alert(db: Session, bus: EventBus, title: str = "Fridge temperature out of range") -> Alert:
    return AlertEngine(db, bus).create_alert(AlertCreate(title=title))


class TestReconcileOnLedgerEvents:
    """The engine reacts to committed mutations through the event bus."""

    def test_use_into_low_then_restock(self, db_session: Session, stock: StockItem, bus: EventBus):
        ledger = StockLedger(db_session, bus)

        ledger.use(stock.id, Decimal("6"), "Minor surgery", "nurse-a")
        active = alerts_for(db_session, stock.id, "active")
        assert len(active) == 1
        assert active[0].type == "low_stock"
        assert active[0].severity == "medium"
        assert active[0].current_value == Decimal("4")
        assert active[0].threshold_value == Decimal("5")
        assert active[0].clinic_id == stock.clinic_id

        ledger.adjust(stock.id, Decimal("10"), "increase", "Delivery received", "storekeeper")
        alerts = alerts_for(db_session, stock.id)
        assert len(alerts) == 1
        assert alerts[0].status == "auto_resolved"
        assert alerts[0].resolved_by is None
        assert alerts[0].resolved_at is not None

    def test_critical_replaces_low(self, db_session: Session, stock: StockItem, bus: EventBus):
        ledger = StockLedger(db_session, bus)
        ledger.use(stock.id, 6, "Minor surgery", "nurse-a")
        ledger.use(stock.id, 3, "Minor surgery", "nurse-a")

        alerts = alerts_for(db_session, stock.id)
        assert [(a.type, a.status) for a in alerts] == [
            ("low_stock", "auto_resolved"),
            ("critical_stock", "active"),
        ]

    def test_out_of_stock(self, db_session: Session, stock: StockItem, bus: EventBus):
        StockLedger(db_session, bus).use(stock.id, 10, "Mass casualty drill", "nurse-a")

        active = alerts_for(db_session, stock.id, "active")
        assert [(a.type, a.severity) for a in active] == [("out_of_stock", "critical")]

    def test_normal_mutation_creates_nothing(self, db_session: Session, stock: StockItem, bus: EventBus):
        StockLedger(db_session, bus).use(stock.id, 1, "Dressing change", "nurse-a")
        assert alerts_for(db_session, stock.id) == []

    def test_deactivation_closes_condition_alerts(self, db_session: Session, stock: StockItem, bus: EventBus):
        StockLedger(db_session, bus).use(stock.id, 6, "Minor surgery", "nurse-a")
        StockService(db_session, bus).deactivate_stock(stock.id)

        assert [a.status for a in alerts_for(db_session, stock.id)] == ["auto_resolved"]


class TestReconcile:

    def test_repeated_reconcile_keeps_one_active_alert(self, db_session: Session, stock: StockItem, bare_bus: EventBus):
        StockLedger(db_session, bare_bus).use(stock.id, 6, "Minor surgery", "nurse-a")
        engine = AlertEngine(db_session, bare_bus)

        first = engine.reconcile(stock.id)
        second = engine.reconcile(stock.id)
        engine.reconcile(stock.id)

        assert first.level == StockLevel.LOW
        assert len(first.created) == 1
        assert second.created == [] and second.auto_resolved == []
        assert len(alerts_for(db_session, stock.id, "active")) == 1

    def test_publishes_alert_events(self, db_session: Session, stock: StockItem, bare_bus: EventBus):
        StockLedger(db_session, bare_bus).use(stock.id, 6, "Minor surgery", "nurse-a")
        AlertEngine(db_session, bare_bus).reconcile(stock.id)

        created = bare_bus.recent(event_name="AlertCreated")
        assert len(created) == 1
        assert created[0].stock_id == stock.id
        assert created[0].type == "low_stock"

    def test_unknown_stock(self, db_session: Session, bare_bus: EventBus):
        with pytest.raises(NotFoundError):
            AlertEngine(db_session, bare_bus).reconcile(4242)


class TestExpiryAlerts:

    def test_expiry_critical_within_three_days(self, db_session: Session, make_stock, bare_bus: EventBus):
        item = make_stock(current_stock=Decimal("100"), expiry_date=today() + timedelta(days=2))
        AlertEngine(db_session, bare_bus).reconcile(item.id)

        [alert] = alerts_for(db_session, item.id, "active")
        assert alert.type == "expiry_critical"
        assert alert.severity == "high"
        assert alert.current_value == Decimal("2")
        assert alert.threshold_value == Decimal("3")
        assert alert.days_until_expiry == 2
        assert alert.expiry_date == item.expiry_date

    def test_expiry_warning_within_a_week(self, db_session: Session, make_stock, bare_bus: EventBus):
        item = make_stock(current_stock=Decimal("100"), expiry_date=today() + timedelta(days=6))
        AlertEngine(db_session, bare_bus).reconcile(item.id)

        assert [a.type for a in alerts_for(db_session, item.id, "active")] == ["expiry_warning"]

    def test_expiry_day_is_expired(self, db_session: Session, make_stock, bare_bus: EventBus):
        item = make_stock(current_stock=Decimal("100"), expiry_date=today())
        AlertEngine(db_session, bare_bus).reconcile(item.id)

        [alert] = alerts_for(db_session, item.id, "active")
        assert alert.type == "expired"
        assert alert.severity == "critical"

    def test_time_passing_escalates_without_quantity_change(self, db_session: Session, make_stock, bare_bus: EventBus):
        item = make_stock(current_stock=Decimal("100"), expiry_date=today() + timedelta(days=6))
        engine = AlertEngine(db_session, bare_bus)

        engine.reconcile(item.id)
        engine.reconcile(item.id, now=today() + timedelta(days=4))
        engine.reconcile(item.id, now=today() + timedelta(days=10))

        assert [(a.type, a.status) for a in alerts_for(db_session, item.id)] == [
            ("expiry_warning", "auto_resolved"),
            ("expiry_critical", "auto_resolved"),
            ("expired", "active"),
        ]


class TestUserActions:

    @pytest.fixture
    def low_alert(self, db_session: Session, stock: StockItem, bare_bus: EventBus) -> Alert:
        StockLedger(db_session, bare_bus).use(stock.id, 6, "Minor surgery", "nurse-a")
        return AlertEngine(db_session, bare_bus).reconcile(stock.id).created[0]

    def test_resolve(self, db_session: Session, low_alert: Alert, bare_bus: EventBus):
        alert = AlertEngine(db_session, bare_bus).resolve(low_alert.id, "pharmacist", "Order placed")

        assert alert.status == "resolved"
        assert alert.is_resolved is True
        assert alert.resolved_by == "pharmacist"
        assert alert.resolution_notes == "Order placed"
        assert alert.resolved_at is not None

    def test_resolve_twice_fails(self, db_session: Session, low_alert: Alert, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        engine.resolve(low_alert.id, "pharmacist")

        with pytest.raises(InvalidStateError):
            engine.resolve(low_alert.id, "pharmacist")
        with pytest.raises(InvalidStateError):
            engine.dismiss(low_alert.id)

    def test_dismiss(self, db_session: Session, low_alert: Alert, bare_bus: EventBus):
        alert = AlertEngine(db_session, bare_bus).dismiss(low_alert.id, "head-nurse")

        assert alert.status == "dismissed"
        assert alert.dismissed_at is not None
        assert alert.resolved_at is None

    def test_auto_resolved_alert_cannot_be_resolved(self, db_session: Session, stock: StockItem, low_alert: Alert, bare_bus: EventBus):
        StockLedger(db_session, bare_bus).adjust(stock.id, 10, "increase", "Delivery", "storekeeper")
        engine = AlertEngine(db_session, bare_bus)
        engine.reconcile(stock.id)

        with pytest.raises(InvalidStateError):
            engine.resolve(low_alert.id, "pharmacist")

    def test_closed_condition_is_not_raised_again(self, db_session: Session, stock: StockItem, low_alert: Alert, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        engine.dismiss(low_alert.id, "head-nurse")

        outcome = engine.reconcile(stock.id)
        assert outcome.created == []
        assert alerts_for(db_session, stock.id, "active") == []

    def test_new_condition_rearms_closed_type(self, db_session: Session, stock: StockItem, low_alert: Alert, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        ledger = StockLedger(db_session, bare_bus)
        engine.dismiss(low_alert.id, "head-nurse")

        ledger.use(stock.id, 3, "Minor surgery", "nurse-a")
        engine.reconcile(stock.id)
        ledger.adjust(stock.id, 3, "increase", "Recount", "nurse-a")
        engine.reconcile(stock.id)

        assert [(a.type, a.status) for a in alerts_for(db_session, stock.id)] == [
            ("low_stock", "dismissed"),
            ("critical_stock", "auto_resolved"),
            ("low_stock", "active"),
        ]

    def test_return_to_normal_rearms_closed_type(self, db_session: Session, stock: StockItem, low_alert: Alert, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        ledger = StockLedger(db_session, bare_bus)
        engine.resolve(low_alert.id, "pharmacist", "Order placed")

        ledger.adjust(stock.id, 10, "increase", "Delivery", "storekeeper")
        assert engine.reconcile(stock.id).level == StockLevel.NORMAL
        ledger.use(stock.id, 10, "Vaccination day", "nurse-a")
        outcome = engine.reconcile(stock.id)

        assert [a.type for a in outcome.created] == ["low_stock"]
        assert [(a.type, a.status) for a in alerts_for(db_session, stock.id)] == [
            ("low_stock", "resolved"),
            ("low_stock", "active"),
        ]
        assert alerts_for(db_session, stock.id, "resolved")[0].cleared_at is not None

    def test_unknown_alert(self, db_session: Session, bare_bus: EventBus):
        with pytest.raises(NotFoundError):
            AlertEngine(db_session, bare_bus).resolve(777, "pharmacist")

    def test_delete(self, db_session: Session, low_alert: Alert, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        alert_id = low_alert.id
        engine.delete_alert(alert_id)

        with pytest.raises(NotFoundError):
            engine.get_alert(alert_id)


class TestBulkActions:
    """Each id is handled on its own; failures do not undo successes."""

    def test_bulk_resolve_reports_partial_failure(self, db_session: Session, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        first = manual_alert(db_session, bare_bus, "Backup failed")
        second = manual_alert(db_session, bare_bus, "Sync delayed")
        engine.dismiss(second.id)

        outcome = engine.bulk_resolve([first.id, second.id, 9999], "admin")

        assert outcome.succeeded == [first.id]
        assert {f["id"]: f["code"] for f in outcome.failed} == {
            second.id: "invalid_state",
            9999: "not_found",
        }
        assert engine.get_alert(first.id).status == "resolved"
        assert engine.get_alert(second.id).status == "dismissed"

    def test_bulk_dismiss_ignores_duplicate_ids(self, db_session: Session, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        alert = manual_alert(db_session, bare_bus)

        outcome = engine.bulk_dismiss([alert.id, alert.id], "admin")

        assert outcome.succeeded == [alert.id]
        assert outcome.failed == []

    def test_bulk_delete(self, db_session: Session, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        ids = [manual_alert(db_session, bare_bus, f"Alert {n}").id for n in range(3)]

        outcome = engine.bulk_delete(ids + [5555])

        assert outcome.succeeded == ids
        assert [f["id"] for f in outcome.failed] == [5555]
        assert db_session.query(Alert).count() == 0


class TestManualAlerts:

    def test_severity_defaults_from_type(self, db_session: Session, bare_bus: EventBus):
        alert = manual_alert(db_session, bare_bus)
        assert alert.type == "system"
        assert alert.severity == "medium"
        assert alert.status == "active"

    def test_clinic_taken_from_stock_item(self, db_session: Session, stock: StockItem, bare_bus: EventBus):
        alert = AlertEngine(db_session, bare_bus).create_alert(AlertCreate(
            type=AlertType.SYSTEM, title="Recall notice", stock_item_id=stock.id,
        ))
        assert alert.clinic_id == stock.clinic_id
        assert alert.stock_name == stock.name

    def test_duplicate_active_condition_alert_rejected(self, db_session: Session, stock: StockItem, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        data = AlertCreate(type=AlertType.LOW_STOCK, title="Low gloves", stock_item_id=stock.id)
        engine.create_alert(data)

        with pytest.raises(InvalidStateError):
            engine.create_alert(data)
        assert len(alerts_for(db_session, stock.id, "active")) == 1

    def test_repeated_system_alerts_on_one_item(self, db_session: Session, stock: StockItem, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        for title in ("Fridge door left open", "Fridge temperature out of range"):
            engine.create_alert(AlertCreate(type=AlertType.SYSTEM, title=title, stock_item_id=stock.id))

        assert [a.title for a in alerts_for(db_session, stock.id, "active")] == [
            "Fridge door left open",
            "Fridge temperature out of range",
        ]

    def test_unknown_stock_item(self, db_session: Session, bare_bus: EventBus):
        with pytest.raises(NotFoundError):
            AlertEngine(db_session, bare_bus).create_alert(AlertCreate(title="Orphan", stock_item_id=31337))


class TestSweep:

    def test_sweep_catches_every_item_once(self, db_session: Session, make_stock, clinic_b, bare_bus: EventBus):
        make_stock(current_stock=Decimal("10"))
        make_stock(current_stock=Decimal("4"))
        make_stock(current_stock=Decimal("50"), expiry_date=today() - timedelta(days=3))
        make_stock(current_stock=Decimal("1"), clinic_id=clinic_b.id)
        engine = AlertEngine(db_session, bare_bus)

        first = engine.sweep()
        second = engine.sweep()

        assert (first.checked, first.created, first.auto_resolved) == (4, 3, 0)
        assert (second.checked, second.created, second.auto_resolved) == (4, 0, 0)

    def test_sweep_by_clinic(self, db_session: Session, make_stock, clinic_a, clinic_b, bare_bus: EventBus):
        make_stock(current_stock=Decimal("4"))
        make_stock(current_stock=Decimal("1"), clinic_id=clinic_b.id)

        summary = AlertEngine(db_session, bare_bus).sweep(clinic_id=clinic_b.id)

        assert (summary.checked, summary.created) == (1, 1)
        assert db_session.query(Alert).filter(Alert.clinic_id == clinic_a.id).count() == 0

    def test_sweep_closes_alerts_of_deactivated_items(self, db_session: Session, stock: StockItem, bare_bus: EventBus):
        StockLedger(db_session, bare_bus).use(stock.id, 6, "Minor surgery", "nurse-a")
        engine = AlertEngine(db_session, bare_bus)
        engine.reconcile(stock.id)
        StockService(db_session, bare_bus).deactivate_stock(stock.id)

        summary = engine.sweep()

        assert summary.auto_resolved == 1
        assert alerts_for(db_session, stock.id, "active") == []


class TestQueries:

    def test_stats_count_severity_of_active_alerts_only(self, db_session: Session, make_stock, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        low = make_stock(current_stock=Decimal("4"))
        empty = make_stock(current_stock=Decimal("0"))
        engine.sweep()
        resolved = alerts_for(db_session, low.id, "active")[0]
        engine.resolve(resolved.id, "pharmacist")

        stats = engine.stats()

        assert stats["total"] == 2
        assert stats["active"] == 1
        assert stats["resolved"] == 1
        assert stats["by_severity"] == {"low": 0, "medium": 0, "high": 0, "critical": 1}
        assert stats["by_type"] == {"low_stock": 1, "out_of_stock": 1}
        assert engine.pending_count() == 1
        assert [a.stock_item_id for a in engine.active_alerts()] == [empty.id]

    def test_list_filters(self, db_session: Session, make_stock, bare_bus: EventBus):
        engine = AlertEngine(db_session, bare_bus)
        make_stock(name="Betadine", current_stock=Decimal("4"))
        make_stock(name="Gauze", current_stock=Decimal("1"))
        engine.sweep()
        manual_alert(db_session, bare_bus, "Autoclave service due")

        by_type, total = engine.list_alerts(type="critical_stock")
        assert total == 1 and by_type[0].title == "Critical stock: Gauze"

        searched, total = engine.list_alerts(search="betadine")
        assert total == 1 and searched[0].type == "low_stock"

        open_alerts, total = engine.list_alerts(is_resolved=False, limit=2)
        assert total == 3 and len(open_alerts) == 2

        _, total = engine.list_alerts(status=AlertStatus.RESOLVED.value)
        assert total == 0
