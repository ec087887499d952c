"""HTTP API tests: status codes, error bodies and the list envelope."""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from medstock.models.clinic import Clinic
from medstock.models.stock import StockItem
from medstock.models.supplier import Supplier
from medstock.services.threshold_classifier import today

API = "/api/v1"
REASON = "Running low after weekend surgeries"


def stock_payload(clinic_id: int, **overrides):
    payload = {
        "name": "Sterile Gauze 10x10",
        "unit": "pack",
        "category": "Wound Care",
        "clinic_id": clinic_id,
        "current_stock": "10",
        "min_stock_level": "5",
        "critical_stock_level": "2",
        "purchase_price": "3.20",
    }
    payload.update(overrides)
    return payload


class TestHealth:

    def test_health(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_readiness(self, client: TestClient):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "healthy"

    def test_security_headers(self, client: TestClient):
        response = client.get("/")
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_request_id_is_echoed_or_generated(self, client: TestClient):
        assert client.get("/health", headers={"X-Request-ID": "abc123"}).headers["X-Request-ID"] == "abc123"
        assert len(client.get("/health").headers["X-Request-ID"]) == 32


class TestStocksApi:

    def test_create_and_get(self, client: TestClient, clinic_a: Clinic, test_supplier: Supplier):
        response = client.post(f"{API}/stocks/", json=stock_payload(clinic_a.id, supplier_id=test_supplier.id))
        assert response.status_code == 201
        data = response.json()
        assert float(data["current_stock"]) == 10
        assert data["level"] == "normal"
        assert data["status"] == "active"
        assert float(data["stock_value"]) == 32.0

        fetched = client.get(f"{API}/stocks/{data['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["supplier_id"] == test_supplier.id

    def test_create_unknown_clinic(self, client: TestClient):
        response = client.post(f"{API}/stocks/", json=stock_payload(999))
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_create_duplicate_name_and_unit(self, client: TestClient, clinic_a: Clinic):
        client.post(f"{API}/stocks/", json=stock_payload(clinic_a.id))
        response = client.post(f"{API}/stocks/", json=stock_payload(clinic_a.id))
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_state"

    def test_create_negative_quantity(self, client: TestClient, clinic_a: Clinic):
        response = client.post(f"{API}/stocks/", json=stock_payload(clinic_a.id, current_stock="-1"))
        assert response.status_code == 422

    def test_get_missing(self, client: TestClient):
        response = client.get(f"{API}/stocks/12345")
        assert response.status_code == 404

    def test_use_updates_quantity_and_raises_alert(self, client: TestClient, stock: StockItem):
        response = client.post(f"{API}/stocks/{stock.id}/use", json={
            "quantity": "6", "reason": "Minor surgery", "performed_by": "nurse-a", "used_by": "Dr. Kaya",
        })
        assert response.status_code == 200
        assert float(response.json()["current_stock"]) == 4
        assert response.json()["level"] == "low"

        active = client.get(f"{API}/stock-alerts/active").json()
        assert [(a["type"], a["stock_item_id"]) for a in active] == [("low_stock", stock.id)]

    def test_use_more_than_available(self, client: TestClient, stock: StockItem):
        response = client.post(f"{API}/stocks/{stock.id}/use", json={
            "quantity": "11", "reason": "Large procedure", "performed_by": "nurse-a",
        })
        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "insufficient_stock"
        assert body["available"] == 10.0
        assert body["requested"] == 11.0
        assert float(client.get(f"{API}/stocks/{stock.id}").json()["current_stock"]) == 10

    def test_use_requires_positive_quantity(self, client: TestClient, stock: StockItem):
        response = client.post(f"{API}/stocks/{stock.id}/use", json={
            "quantity": "0", "reason": "Nothing", "performed_by": "nurse-a",
        })
        assert response.status_code == 422

    def test_adjust(self, client: TestClient, stock: StockItem):
        response = client.post(f"{API}/stocks/{stock.id}/adjust", json={
            "type": "increase", "quantity": "15", "reason": "Delivery received", "performed_by": "storekeeper",
        })
        assert response.status_code == 200
        assert float(response.json()["current_stock"]) == 25

        response = client.post(f"{API}/stocks/{stock.id}/adjust", json={
            "type": "sideways", "quantity": "1", "reason": "Recount", "performed_by": "storekeeper",
        })
        assert response.status_code == 422

    def test_quantity_not_editable_through_update(self, client: TestClient, stock: StockItem):
        response = client.put(f"{API}/stocks/{stock.id}", json={"current_stock": "500"})
        assert response.status_code == 422

    def test_threshold_edit_reconciles_alerts(self, client: TestClient, stock: StockItem):
        response = client.put(f"{API}/stocks/{stock.id}", json={"min_stock_level": "20"})
        assert response.status_code == 200
        assert response.json()["level"] == "low"

        alerts = client.get(f"{API}/stock-alerts/", params={"stock_id": stock.id}).json()
        assert [a["type"] for a in alerts["items"]] == ["low_stock"]

    def test_mutation_on_deactivated_item(self, client: TestClient, stock: StockItem):
        assert client.post(f"{API}/stocks/{stock.id}/deactivate").json()["is_active"] is False

        response = client.post(f"{API}/stocks/{stock.id}/use", json={
            "quantity": "1", "reason": "Dressing change", "performed_by": "nurse-a",
        })
        assert response.status_code == 409
        assert response.json()["code"] == "inactive_stock"

        assert client.post(f"{API}/stocks/{stock.id}/deactivate").status_code == 409
        assert client.post(f"{API}/stocks/{stock.id}/reactivate").json()["is_active"] is True

    def test_history(self, client: TestClient, stock: StockItem):
        for n in range(3):
            client.post(f"{API}/stocks/{stock.id}/use", json={
                "quantity": "1", "reason": f"Use {n}", "performed_by": "nurse-a",
            })

        page = client.get(f"{API}/stocks/{stock.id}/history", params={"limit": 2}).json()
        assert page["total"] == 4
        assert page["has_more"] is True
        assert [op["reason"] for op in page["items"]] == ["Use 2", "Use 1"]
        assert float(page["items"][0]["delta"]) == -1

    def test_list_envelope_and_filters(self, client: TestClient, make_stock, clinic_b: Clinic):
        make_stock(name="Alcohol Swabs", category="Consumables")
        make_stock(name="Lidocaine 2%", category="Medication", current_stock=Decimal("1"))
        make_stock(name="Alcohol Gel", category="Consumables", clinic_id=clinic_b.id)

        page = client.get(f"{API}/stocks/", params={"limit": 2}).json()
        assert (page["total"], page["skip"], page["limit"], page["has_more"]) == (3, 0, 2, True)

        by_name = client.get(f"{API}/stocks/", params={"name": "alcohol"}).json()
        assert by_name["total"] == 2

        by_clinic = client.get(f"{API}/stocks/", params={"clinic_id": clinic_b.id}).json()
        assert [s["name"] for s in by_clinic["items"]] == ["Alcohol Gel"]

        by_level = client.get(f"{API}/stocks/", params={"level": "critical"}).json()
        assert [s["name"] for s in by_level["items"]] == ["Lidocaine 2%"]

        assert client.get(f"{API}/stocks/categories").json() == ["Consumables", "Medication"]

    def test_level_listings(self, client: TestClient, make_stock):
        make_stock(name="Plenty", current_stock=Decimal("50"))
        make_stock(name="Low", current_stock=Decimal("4"))
        make_stock(name="Critical", current_stock=Decimal("2"))
        make_stock(name="Expiring", current_stock=Decimal("50"), expiry_date=today() + timedelta(days=20))
        make_stock(name="Far Expiry", current_stock=Decimal("50"), expiry_date=today() + timedelta(days=90))

        low = [s["name"] for s in client.get(f"{API}/stocks/levels/low").json()]
        critical = [s["name"] for s in client.get(f"{API}/stocks/levels/critical").json()]
        expiring = [s["name"] for s in client.get(f"{API}/stocks/levels/expiring").json()]
        expiring_week = client.get(f"{API}/stocks/levels/expiring", params={"days": 7}).json()

        assert low == ["Critical", "Low"]
        assert critical == ["Critical"]
        assert expiring == ["Expiring"]
        assert expiring_week == []

    def test_stats(self, client: TestClient, make_stock):
        make_stock(name="Plenty", current_stock=Decimal("50"), purchase_price=Decimal("2"))
        make_stock(name="Low", current_stock=Decimal("4"), purchase_price=Decimal("10"))
        make_stock(name="Empty", current_stock=Decimal("0"))
        make_stock(name="Expired", current_stock=Decimal("8"), expiry_date=today() - timedelta(days=1))

        stats = client.get(f"{API}/stocks/stats").json()
        assert stats["total_items"] == 4
        assert stats["low_stock_items"] == 1
        assert stats["out_of_stock_items"] == 1
        assert stats["expired_items"] == 1
        assert float(stats["total_value"]) == 50 * 2 + 4 * 10 + 8 * 12.5

    def test_delete_without_history_removes_item(self, client: TestClient, stock: StockItem):
        stock_id = stock.id
        response = client.delete(f"{API}/stocks/{stock_id}")
        assert response.status_code == 200
        assert response.json()["deleted"] is True
        assert client.get(f"{API}/stocks/{stock_id}").status_code == 404

    def test_delete_with_usage_deactivates(self, client: TestClient, stock: StockItem):
        client.post(f"{API}/stocks/{stock.id}/use", json={
            "quantity": "1", "reason": "Dressing change", "performed_by": "nurse-a",
        })
        response = client.delete(f"{API}/stocks/{stock.id}")
        assert response.status_code == 200
        assert response.json() == {
            "id": stock.id,
            "deleted": False,
            "deactivated": True,
            "message": "Stock item has usage or transfer history and was deactivated instead",
        }
        assert client.get(f"{API}/stocks/{stock.id}").json()["is_active"] is False


class TestStockAlertsApi:

    def test_manual_alert_lifecycle(self, client: TestClient, clinic_a: Clinic):
        created = client.post(f"{API}/stock-alerts/", json={
            "title": "Vaccine fridge at 9C", "severity": "critical", "clinic_id": clinic_a.id,
        })
        assert created.status_code == 201
        alert_id = created.json()["id"]
        assert created.json()["status"] == "active"

        resolved = client.post(f"{API}/stock-alerts/{alert_id}/resolve", json={
            "resolved_by": "technician", "notes": "Thermostat replaced",
        })
        assert resolved.status_code == 200
        assert resolved.json()["is_resolved"] is True

        again = client.post(f"{API}/stock-alerts/{alert_id}/resolve", json={"resolved_by": "technician"})
        assert again.status_code == 409
        assert again.json()["code"] == "invalid_state"

        assert client.delete(f"{API}/stock-alerts/{alert_id}").status_code == 204
        assert client.get(f"{API}/stock-alerts/{alert_id}").status_code == 404

    def test_dismiss_without_body(self, client: TestClient):
        alert_id = client.post(f"{API}/stock-alerts/", json={"title": "Printer offline"}).json()["id"]
        response = client.post(f"{API}/stock-alerts/{alert_id}/dismiss")
        assert response.status_code == 200
        assert response.json()["status"] == "dismissed"

    def test_bulk_resolve_partial(self, client: TestClient):
        ids = [client.post(f"{API}/stock-alerts/", json={"title": f"Alert {n}"}).json()["id"] for n in range(2)]
        client.post(f"{API}/stock-alerts/{ids[1]}/dismiss")

        response = client.post(f"{API}/stock-alerts/bulk/resolve", json={
            "ids": ids + [999], "resolved_by": "admin",
        })
        assert response.status_code == 200
        body = response.json()
        assert body["succeeded"] == [ids[0]]
        assert sorted(f["id"] for f in body["failed"]) == [ids[1], 999]

    def test_bulk_requires_ids(self, client: TestClient):
        response = client.post(f"{API}/stock-alerts/bulk/dismiss", json={"ids": []})
        assert response.status_code == 422

    def test_sweep_reconcile_and_counts(self, client: TestClient, make_stock):
        low = make_stock(name="Low", current_stock=Decimal("4"))
        make_stock(name="Plenty", current_stock=Decimal("50"))

        sweep = client.post(f"{API}/stock-alerts/sweep").json()
        assert sweep == {"checked": 2, "created": 1, "auto_resolved": 0}

        reconcile = client.post(f"{API}/stock-alerts/reconcile/{low.id}").json()
        assert reconcile["level"] == "low"
        assert reconcile["created"] == [] and reconcile["auto_resolved"] == []

        assert client.get(f"{API}/stock-alerts/pending/count").json() == {"count": 1}
        stats = client.get(f"{API}/stock-alerts/statistics").json()
        assert stats["active"] == 1
        assert stats["by_severity"]["medium"] == 1

    def test_reconcile_unknown_stock(self, client: TestClient):
        assert client.post(f"{API}/stock-alerts/reconcile/4040").status_code == 404

    def test_invalid_filter_value(self, client: TestClient):
        assert client.get(f"{API}/stock-alerts/", params={"status": "snoozed"}).status_code == 422


class TestStockRequestsApi:

    @pytest.fixture
    def source(self, make_stock) -> StockItem:
        return make_stock(name="Suture Kit", current_stock=Decimal("100"))

    def _create(self, client, clinic_b, source, quantity="30"):
        return client.post(f"{API}/stock-requests/", json={
            "requester_clinic_id": clinic_b.id,
            "requested_from_clinic_id": source.clinic_id,
            "stock_id": source.id,
            "requested_quantity": quantity,
            "request_reason": REASON,
            "requested_by": "dr-kaya",
        })

    def test_full_workflow(self, client: TestClient, clinic_b: Clinic, source: StockItem):
        created = self._create(client, clinic_b, source)
        assert created.status_code == 201
        request_id = created.json()["id"]
        assert created.json()["stock_name"] == "Suture Kit"
        assert created.json()["requester_clinic_name"] == clinic_b.name

        pending = client.get(f"{API}/stock-requests/pending/list", params={"clinic_id": source.clinic_id}).json()
        assert [r["id"] for r in pending] == [request_id]

        approved = client.put(f"{API}/stock-requests/{request_id}/approve", json={
            "approved_quantity": "25", "approved_by": "head-nurse",
        })
        assert approved.json()["status"] == "approved"

        completed = client.put(f"{API}/stock-requests/{request_id}/complete", json={"performed_by": "storekeeper"})
        assert completed.status_code == 200
        destination_id = completed.json()["destination_stock_id"]

        assert float(client.get(f"{API}/stocks/{source.id}").json()["current_stock"]) == 75
        assert float(client.get(f"{API}/stocks/{destination_id}").json()["current_stock"]) == 25
        assert client.get(f"{API}/stock-requests/stats").json()["completed"] == 1

    def test_over_cap(self, client: TestClient, clinic_b: Clinic, source: StockItem):
        response = self._create(client, clinic_b, source, "60")
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"
        assert response.json()["max_allowed"] == 50.0

    def test_invalid_transition(self, client: TestClient, clinic_b: Clinic, source: StockItem):
        request_id = self._create(client, clinic_b, source).json()["id"]
        response = client.put(f"{API}/stock-requests/{request_id}/complete", json={"performed_by": "storekeeper"})
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"
        assert response.json()["current_status"] == "pending"

    def test_reject(self, client: TestClient, clinic_b: Clinic, source: StockItem):
        request_id = self._create(client, clinic_b, source).json()["id"]
        response = client.put(f"{API}/stock-requests/{request_id}/reject", json={
            "rejection_reason": "Our own stock is needed this week", "rejected_by": "head-nurse",
        })
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_list_sent_and_received(self, client: TestClient, clinic_b: Clinic, source: StockItem):
        self._create(client, clinic_b, source)

        sent = client.get(f"{API}/stock-requests/", params={"clinic_id": clinic_b.id, "type": "sent"}).json()
        received = client.get(f"{API}/stock-requests/", params={"clinic_id": clinic_b.id, "type": "received"}).json()
        assert sent["total"] == 1
        assert received["total"] == 0

    def test_missing_request(self, client: TestClient):
        assert client.get(f"{API}/stock-requests/321").status_code == 404


class TestClinicsApi:

    def test_create_list_update(self, client: TestClient):
        created = client.post(f"{API}/clinics/", json={
            "name": "Sisli Clinic", "code": "SSL", "city": "Istanbul", "email": "sisli@clinic.example.com",
        })
        assert created.status_code == 201
        clinic_id = created.json()["id"]

        updated = client.put(f"{API}/clinics/{clinic_id}", json={"manager_name": "Dr. Arslan"})
        assert updated.json()["manager_name"] == "Dr. Arslan"
        assert client.get(f"{API}/clinics/").json()["total"] == 1

    def test_duplicate_code(self, client: TestClient, clinic_a: Clinic):
        response = client.post(f"{API}/clinics/", json={"name": "Another", "code": clinic_a.code})
        assert response.status_code == 409

    def test_invalid_email(self, client: TestClient):
        response = client.post(f"{API}/clinics/", json={"name": "Bad", "code": "BAD", "email": "not-an-email"})
        assert response.status_code == 422

    def test_delete_clinic_with_stock_refused(self, client: TestClient, stock: StockItem):
        response = client.delete(f"{API}/clinics/{stock.clinic_id}")
        assert response.status_code == 409

    def test_delete_empty_clinic(self, client: TestClient, clinic_b: Clinic):
        clinic_id = clinic_b.id
        assert client.delete(f"{API}/clinics/{clinic_id}").status_code == 204
        assert client.get(f"{API}/clinics/{clinic_id}").status_code == 404


class TestSuppliersApi:

    def test_crud(self, client: TestClient):
        created = client.post(f"{API}/suppliers/", json={"name": "Anatolia Medical", "email": "sales@anatolia.example.com"})
        assert created.status_code == 201
        supplier_id = created.json()["id"]

        assert client.get(f"{API}/suppliers/", params={"search": "anatolia"}).json()["total"] == 1
        assert client.put(f"{API}/suppliers/{supplier_id}", json={"phone": "+902120000000"}).status_code == 200
        assert client.delete(f"{API}/suppliers/{supplier_id}").status_code == 204

    def test_delete_referenced_supplier_refused(self, client: TestClient, make_stock, test_supplier: Supplier):
        make_stock(supplier_id=test_supplier.id)
        assert client.delete(f"{API}/suppliers/{test_supplier.id}").status_code == 409


class TestEventsApi:

    def test_recent_events(self, client: TestClient, stock: StockItem):
        client.post(f"{API}/stocks/{stock.id}/use", json={
            "quantity": "6", "reason": "Minor surgery", "performed_by": "nurse-a",
        })

        events = client.get(f"{API}/events/recent", params={"event": "StockQuantityChanged"}).json()
        assert events[0]["event"] == "StockQuantityChanged"
        assert events[0]["stock_id"] == stock.id
        assert events[0]["old_value"] == 10.0
        assert events[0]["new_value"] == 4.0

        created = client.get(f"{API}/events/recent", params={"event": "AlertCreated"}).json()
        assert created[0]["type"] == "low_stock"


class TestCategoriesApi:

    def test_crud_and_duplicate(self, client: TestClient):
        created = client.post(f"{API}/categories/", json={"name": "Wound Care", "color": "#22c55e"})
        assert created.status_code == 201
        category_id = created.json()["id"]

        assert client.post(f"{API}/categories/", json={"name": "Wound Care"}).status_code == 409
        assert client.post(f"{API}/categories/", json={"name": "Bad", "color": "green"}).status_code == 422
        assert [c["name"] for c in client.get(f"{API}/categories/").json()] == ["Wound Care"]

        updated = client.put(f"{API}/categories/{category_id}", json={"description": "Dressings and gauze"})
        assert updated.json()["description"] == "Dressings and gauze"
        assert client.delete(f"{API}/categories/{category_id}").status_code == 204
        assert client.get(f"{API}/categories/{category_id}").status_code == 404

    def test_rename_applies_to_stock_items(self, client: TestClient, make_stock):
        item = make_stock(category="Gloves")
        category_id = client.post(f"{API}/categories/", json={"name": "Gloves"}).json()["id"]

        response = client.put(f"{API}/categories/{category_id}", json={"name": "Examination Gloves"})
        assert response.status_code == 200
        assert client.get(f"{API}/stocks/{item.id}").json()["category"] == "Examination Gloves"

    def test_delete_used_category_refused(self, client: TestClient, make_stock):
        make_stock(category="Gloves")
        category_id = client.post(f"{API}/categories/", json={"name": "Gloves"}).json()["id"]
        assert client.delete(f"{API}/categories/{category_id}").status_code == 409

    def test_stats(self, client: TestClient, make_stock):
        item = make_stock(category="Gloves")
        make_stock(category="Gloves", current_stock=Decimal("4"))
        category_id = client.post(f"{API}/categories/", json={"name": "Gloves"}).json()["id"]
        client.post(f"{API}/stocks/{item.id}/use", json={
            "quantity": "2", "reason": "Minor surgery", "performed_by": "nurse-a",
        })

        stats = client.get(f"{API}/categories/{category_id}/stats").json()
        assert stats["item_count"] == 2
        assert float(stats["total_stock"]) == 12
        assert stats["low_stock_count"] == 1
        assert float(stats["usage"]) == 2

    def test_stats_without_items(self, client: TestClient):
        category_id = client.post(f"{API}/categories/", json={"name": "Imaging"}).json()["id"]
        stats = client.get(f"{API}/categories/{category_id}/stats").json()
        assert stats["item_count"] == 0


class TestReportsApi:

    def test_dashboard_summary(self, client: TestClient, stock: StockItem):
        summary = client.get(f"{API}/reports/dashboard/summary").json()
        assert summary["stocks"]["total_items"] == 1
        assert set(summary) >= {"stocks", "clinics", "suppliers", "alerts", "requests"}

    def test_movements_and_usage(self, client: TestClient, stock: StockItem):
        client.post(f"{API}/stocks/{stock.id}/use", json={
            "quantity": "3", "reason": "Minor surgery", "performed_by": "nurse-a",
        })

        movements = client.get(f"{API}/reports/stocks/movements", params={"kind": "usage"}).json()
        assert movements["summary"]["outbound_quantity"] == 3.0
        trends = client.get(f"{API}/reports/stocks/usage-trends").json()
        assert trends["summary"]["total_quantity"] == 3.0
        top = client.get(f"{API}/reports/stocks/top-used", params={"limit": 1}).json()
        assert top["items"][0]["stock_id"] == stock.id

    def test_other_reports_respond(self, client: TestClient, stock: StockItem):
        for path in (
            "stocks/least-used", "stocks/expiry-analysis", "stocks/categories", "clinics/consumption",
            "transfers/analysis", "alerts/resolution-times", "alerts/recurring",
        ):
            assert client.get(f"{API}/reports/{path}").status_code == 200, path

    def test_inverted_period(self, client: TestClient):
        response = client.get(f"{API}/reports/stocks/movements", params={
            "start_date": "2026-02-01T00:00:00Z", "end_date": "2026-01-01T00:00:00Z",
        })
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_unknown_kind(self, client: TestClient):
        assert client.get(f"{API}/reports/stocks/movements", params={"kind": "theft"}).status_code == 422
