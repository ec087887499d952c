"""Tests for the in-process domain event bus."""

import threading
from decimal import Decimal

from medstock.core.events import AlertClosed, EventBus, StockDetailsChanged, StockQuantityChanged


def _quantity_event(stock_id: int = 1) -> StockQuantityChanged:
    return StockQuantityChanged(
        stock_id=stock_id, clinic_id=1, old_value=Decimal("5"), new_value=Decimal("4"), kind="usage"
    )


class TestEventBus:

    def test_delivers_by_event_type(self):
        bus = EventBus()
        seen = []
        bus.subscribe(StockQuantityChanged, seen.append)

        bus.publish(_quantity_event())
        bus.publish(StockDetailsChanged(stock_id=1, clinic_id=1))

        assert [e.name for e in seen] == ["StockQuantityChanged"]
        assert [e.name for e in bus.recent()] == ["StockDetailsChanged", "StockQuantityChanged"]

    def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(StockQuantityChanged, broken)
        bus.subscribe(StockQuantityChanged, seen.append)
        bus.publish(_quantity_event())

        assert len(seen) == 1

    def test_handler_may_publish(self):
        bus = EventBus()
        bus.subscribe(StockQuantityChanged, lambda e: bus.publish(AlertClosed(alert_id=7, status="auto_resolved")))

        bus.publish(_quantity_event())

        assert bus.recent(event_name="AlertClosed")[0].alert_id == 7

    def test_unsubscribe_and_reset(self):
        bus = EventBus()
        bus.subscribe(StockQuantityChanged, print)
        bus.subscribe(StockQuantityChanged, print)
        assert bus.subscriber_count() == 1

        bus.unsubscribe(StockQuantityChanged, print)
        assert bus.handlers_for(StockQuantityChanged) == []

        bus.publish(_quantity_event())
        bus.reset()
        assert bus.recent() == []

    def test_publish_from_worker_threads_while_subscribing(self):
        bus = EventBus(max_buffer=1000)
        counter = {"n": 0}
        counter_lock = threading.Lock()

        def count(event):
            with counter_lock:
                counter["n"] += 1

        bus.subscribe(StockQuantityChanged, count)
        errors = []

        def publisher(offset):
            try:
                for i in range(200):
                    bus.publish(_quantity_event(offset + i))
            except Exception as exc:
                errors.append(exc)

        workers = [threading.Thread(target=publisher, args=(n * 1000,)) for n in range(4)]
        for worker in workers:
            worker.start()
        for i in range(200):
            extra = lambda e, i=i: None
            bus.subscribe(StockDetailsChanged, extra)
            bus.unsubscribe(StockDetailsChanged, extra)
        for worker in workers:
            worker.join()

        assert errors == []
        assert counter["n"] == 800
        assert len(bus.recent(limit=1000)) == 800
