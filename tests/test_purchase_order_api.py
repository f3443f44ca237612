from __future__ import annotations

from datetime import date

from app.core.errors import StoreError
from app.models.models import InventoryTransaction, PurchaseOrderStatusHistory
from app.services import purchase_order as po_service
from tests.test_utils import (
    ORG_ID,
    USER_ID,
    create_medicine,
    create_purchase_order,
    create_supplier,
    medicine_stock,
)


BASE_URL = "/api/v1/purchase-orders"
HEADERS = {"X-Organization-Id": str(ORG_ID), "X-User-Id": str(USER_ID)}


def _create_payload(supplier, med_a, med_b, **overrides):
    payload = {
        "supplier_id": supplier.id,
        "order_date": "2025-03-01",
        "expected_delivery_date": "2025-03-10",
        "tax_amount": "5.00",
        "notes": "  deliver to back door ",
        "items": [
            {"medicine_id": med_a.id, "quantity": 10, "unit_cost": "5.00"},
            {"medicine_id": med_b.id, "quantity": 20, "unit_cost": "2.50"},
        ],
    }
    payload.update(overrides)
    return payload


def _setup(db_session):
    supplier = create_supplier(db_session)
    med_a = create_medicine(db_session, "Amoxicillin", quantity=100)
    med_b = create_medicine(db_session, "Ibuprofen", quantity=50)
    return supplier, med_a, med_b


def test_create_purchase_order(client, db_session):
    supplier, med_a, med_b = _setup(db_session)

    resp = client.post(f"{BASE_URL}/", json=_create_payload(supplier, med_a, med_b), headers=HEADERS)

    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["status"] == "pending"
    assert body["total_amount"] == 105.0
    assert body["tax_amount"] == 5.0
    assert body["po_number"] == f"PO-{date.today():%Y%m%d}-00001"
    assert body["created_by"] == USER_ID
    assert body["notes"] == "deliver to back door"
    assert body["supplier"]["name"] == "Acme Pharma"
    assert [i["total_cost"] for i in body["items"]] == [50.0, 50.0]
    assert [i["received_quantity"] for i in body["items"]] == [0, 0]
    assert medicine_stock(db_session, med_a.id) == 100
    assert medicine_stock(db_session, med_b.id) == 50


def test_create_requires_request_context(client, db_session):
    supplier, med_a, med_b = _setup(db_session)

    resp = client.post(f"{BASE_URL}/", json=_create_payload(supplier, med_a, med_b))

    assert resp.status_code == 422


def test_create_rejects_invalid_orders(client, db_session):
    supplier, med_a, med_b = _setup(db_session)

    resp = client.post(f"{BASE_URL}/", json=_create_payload(supplier, med_a, med_b, items=[]), headers=HEADERS)
    assert resp.status_code == 400
    assert "at least one item" in resp.json()["detail"]

    payload = _create_payload(supplier, med_a, med_b, discount_amount="-3")
    resp = client.post(f"{BASE_URL}/", json=payload, headers=HEADERS)
    assert resp.status_code == 400
    assert "Discount amount cannot be negative" in resp.json()["detail"]

    payload = _create_payload(supplier, med_a, med_b, discount_amount="500.00")
    resp = client.post(f"{BASE_URL}/", json=payload, headers=HEADERS)
    assert resp.status_code == 400
    assert "Total amount cannot be negative" in resp.json()["detail"]

    payload = _create_payload(supplier, med_a, med_b, supplier_id=9999)
    resp = client.post(f"{BASE_URL}/", json=payload, headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Supplier not found: 9999"


def test_get_purchase_order_is_scoped_to_organization(client, db_session):
    supplier, med_a, med_b = _setup(db_session)
    po = create_purchase_order(db_session, supplier, [(med_a, 1, "1.00")])

    resp = client.get(f"{BASE_URL}/{po.id}", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["items"][0]["medicine"]["name"] == "Amoxicillin"

    other_org = {"X-Organization-Id": str(ORG_ID + 1), "X-User-Id": str(USER_ID)}
    resp = client.get(f"{BASE_URL}/{po.id}", headers=other_org)
    assert resp.status_code == 404
    assert resp.json()["detail"] == f"Purchase order not found: {po.id}"


def test_update_purchase_order_replaces_items(client, db_session):
    supplier, med_a, med_b = _setup(db_session)
    po = create_purchase_order(db_session, supplier, [(med_a, 10, "5.00"), (med_b, 20, "2.50")])

    resp = client.put(
        f"{BASE_URL}/{po.id}",
        json={"items": [{"medicine_id": med_b.id, "quantity": 3, "unit_cost": "4.00"}]},
        headers=HEADERS,
    )

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert len(body["items"]) == 1
    assert body["total_amount"] == 12.0
    assert body["po_number"] == po.po_number


def test_receive_items_walkthrough(client, db_session):
    supplier, med_a, med_b = _setup(db_session)
    po = create_purchase_order(db_session, supplier, [(med_a, 10, "5.00"), (med_b, 20, "2.50")], tax="5.00")
    item_a, item_b = po.items

    resp = client.patch(
        f"{BASE_URL}/{po.id}/receive",
        json={
            "items": [
                {"id": item_a.id, "received_quantity": 10},
                {"id": item_b.id, "received_quantity": 15},
            ]
        },
        headers=HEADERS,
    )

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["result"] == {"success": True, "message": "Items received successfully"}
    assert body["purchase_order"]["status"] == "partially_received"
    assert medicine_stock(db_session, med_a.id) == 110
    assert medicine_stock(db_session, med_b.id) == 65

    resp = client.patch(
        f"{BASE_URL}/{po.id}/receive",
        json={"items": [{"id": item_b.id, "received_quantity": 5}], "notes": "second truck"},
        headers=HEADERS,
    )

    assert resp.status_code == 200, resp.text
    order = resp.json()["purchase_order"]
    assert order["status"] == "received"
    assert order["actual_delivery_date"] == date.today().isoformat()
    assert medicine_stock(db_session, med_b.id) == 70
    assert db_session.query(InventoryTransaction).count() == 3


def test_receive_without_items_receives_everything_outstanding(client, db_session):
    supplier, med_a, med_b = _setup(db_session)
    po = create_purchase_order(db_session, supplier, [(med_a, 10, "5.00"), (med_b, 20, "2.50")])

    resp = client.patch(f"{BASE_URL}/{po.id}/receive", json={}, headers=HEADERS)

    assert resp.status_code == 200, resp.text
    order = resp.json()["purchase_order"]
    assert order["status"] == "received"
    assert [i["received_quantity"] for i in order["items"]] == [10, 20]
    assert medicine_stock(db_session, med_a.id) == 110
    assert medicine_stock(db_session, med_b.id) == 70


def test_receive_unknown_item_returns_404(client, db_session):
    supplier, med_a, med_b = _setup(db_session)
    po = create_purchase_order(db_session, supplier, [(med_a, 10, "5.00")])

    resp = client.patch(
        f"{BASE_URL}/{po.id}/receive",
        json={"items": [{"id": 4242, "received_quantity": 1}]},
        headers=HEADERS,
    )

    assert resp.status_code == 404
    assert medicine_stock(db_session, med_a.id) == 100


def test_status_update_and_invalid_transition(client, db_session):
    supplier, med_a, med_b = _setup(db_session)
    po = create_purchase_order(db_session, supplier, [(med_a, 1, "1.00")])

    resp = client.patch(
        f"{BASE_URL}/{po.id}/status",
        json={"status": "received", "notes": "counted at the dock"},
        headers=HEADERS,
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "received"
    assert resp.json()["actual_delivery_date"] == date.today().isoformat()

    resp = client.patch(f"{BASE_URL}/{po.id}/status", json={"status": "cancelled"}, headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cannot transition from received to cancelled"

    resp = client.patch(f"{BASE_URL}/{po.id}/status", json={"status": "shipped"}, headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cannot transition from received to shipped"


def test_unknown_status_names_source_and_target(client, db_session):
    supplier, med_a, med_b = _setup(db_session)
    po = create_purchase_order(db_session, supplier, [(med_a, 1, "1.00")])

    resp = client.patch(f"{BASE_URL}/{po.id}/status", json={"status": "approved"}, headers=HEADERS)

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cannot transition from pending to approved"
    assert client.get(f"{BASE_URL}/{po.id}", headers=HEADERS).json()["status"] == "pending"


def test_cancel_apply_and_history(client, db_session):
    supplier, med_a, med_b = _setup(db_session)
    cancelled = create_purchase_order(db_session, supplier, [(med_a, 1, "1.00")])
    applied = create_purchase_order(db_session, supplier, [(med_b, 2, "1.00")])

    resp = client.patch(f"{BASE_URL}/{cancelled.id}/cancel", json={"reason": "duplicate"}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    resp = client.patch(f"{BASE_URL}/{cancelled.id}/cancel", headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cannot cancel purchase order in current status"

    resp = client.put(f"{BASE_URL}/{cancelled.id}", json={"notes": "too late"}, headers=HEADERS)
    assert resp.status_code == 400

    resp = client.patch(f"{BASE_URL}/{applied.id}/apply", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["status"] == "applied"
    assert resp.json()["applied_at"] is not None

    resp = client.get(f"{BASE_URL}/{cancelled.id}/history", headers=HEADERS)
    assert resp.status_code == 200
    history = resp.json()
    assert len(history) == 1
    assert history[0]["old_status"] == "pending"
    assert history[0]["new_status"] == "cancelled"
    assert history[0]["notes"] == "duplicate"
    assert history[0]["changed_by"] == USER_ID
    assert db_session.query(PurchaseOrderStatusHistory).count() == 2


def test_list_stats_overdue_and_supplier_views(client, db_session):
    supplier, med_a, med_b = _setup(db_session)
    other = create_supplier(db_session, name="Beta Meds")
    first = create_purchase_order(
        db_session, supplier, [(med_a, 2, "10.00")],
        order_date=date(2025, 1, 10), expected_delivery_date=date(2025, 1, 20),
    )
    second = create_purchase_order(db_session, other, [(med_b, 1, "4.00")], order_date=date(2025, 2, 10))

    resp = client.get(f"{BASE_URL}/", params={"limit": 1}, headers=HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert [o["id"] for o in body["purchase_orders"]] == [second.id]
    assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "total_pages": 2}

    resp = client.get(f"{BASE_URL}/", params={"limit": 1000}, headers=HEADERS)
    assert resp.json()["pagination"]["limit"] == 100

    resp = client.get(f"{BASE_URL}/supplier/{supplier.id}", headers=HEADERS)
    assert [o["id"] for o in resp.json()["purchase_orders"]] == [first.id]

    resp = client.get(f"{BASE_URL}/supplier/9999", headers=HEADERS)
    assert resp.status_code == 404

    resp = client.get(f"{BASE_URL}/overdue", headers=HEADERS)
    assert [o["id"] for o in resp.json()["purchase_orders"]] == [first.id]

    resp = client.get(f"{BASE_URL}/stats", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json() == {"total": 2, "total_value": 24.0, "status_breakdown": {"pending": 2}}


def test_store_errors_are_reported_as_500(client, db_session, monkeypatch):
    def _failing_stats(db, organization_id):
        raise StoreError("connection refused", operation="stats")

    monkeypatch.setattr(po_service, "get_purchase_order_stats", _failing_stats)

    resp = client.get(f"{BASE_URL}/stats", headers=HEADERS)

    assert resp.status_code == 500
    assert resp.json() == {"detail": "Internal server error"}


def test_report_summarises_range(client, db_session):
    supplier, med_a, med_b = _setup(db_session)
    other = create_supplier(db_session, name="Beta Meds")
    create_purchase_order(db_session, supplier, [(med_a, 2, "10.00")], order_date=date(2025, 1, 10))
    create_purchase_order(db_session, other, [(med_b, 8, "0.125")], order_date=date(2025, 1, 20))
    create_purchase_order(db_session, other, [(med_b, 1, "9.00")], order_date=date(2025, 5, 1))

    resp = client.get(
        f"{BASE_URL}/report",
        params={"start_date": "2025-01-01", "end_date": "2025-01-31"},
        headers=HEADERS,
    )

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert len(body["purchase_orders"]) == 2
    assert body["summary"] == {
        "total_orders": 2,
        "total_value": 21.0,
        "status_breakdown": {"pending": 2},
        "supplier_breakdown": {
            "Acme Pharma": {"count": 1, "total_value": 20.0},
            "Beta Meds": {"count": 1, "total_value": 1.0},
        },
    }

    resp = client.get(
        f"{BASE_URL}/report",
        params={"start_date": "2025-01-01", "end_date": "2025-01-31", "supplier_id": other.id},
        headers=HEADERS,
    )
    assert resp.json()["summary"]["total_orders"] == 1


def test_report_rejects_missing_or_reversed_dates(client, db_session):
    resp = client.get(f"{BASE_URL}/report", params={"start_date": "2025-01-01"}, headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Validation failed: Start date and end date are required"

    resp = client.get(
        f"{BASE_URL}/report",
        params={"start_date": "2025-02-01", "end_date": "2025-01-01"},
        headers=HEADERS,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Validation failed: Start date cannot be after end date"
