from datetime import date, timedelta

from app.medstock.core.metrics import metrics
from tests.medstock_helpers import (
    add_batch,
    add_product,
    admin,
    auth_headers,
    batch_counts,
    create_hospital,
    department_total,
    nurse,
    pharmacist,
)


def _create(client, hospital, *, quantity=100, title="Ward restock", priority="NORMAL", headers=None):
    response = client.post(
        "/medstock/transfers",
        headers=headers or auth_headers(nurse(hospital)),
        json={
            "requesting_department_id": str(hospital.ward.id),
            "supplying_department_id": str(hospital.pharmacy.id),
            "title": title,
            "request_reason": "Weekly top-up",
            "priority": priority,
            "items": [{"product_id": str(hospital.product.id), "requested_quantity": quantity}],
        },
    )
    return response


def test_full_lifecycle_over_http(client, db_session):
    hospital = create_hospital(db_session)
    batch_x = add_batch(db_session, hospital, lot="X", quantity=60, expiry=date(2026, 12, 31))
    batch_y = add_batch(db_session, hospital, lot="Y", quantity=60, expiry=date(2027, 6, 30))

    created = _create(client, hospital)
    assert created.status_code == 201
    transfer = created.json()
    assert transfer["status"] == "PENDING"
    assert transfer["code"].startswith("REQ-")
    assert transfer["requesting_department"]["name"] == hospital.ward.name
    assert transfer["allowed_actions"]["can_deliver"] is True
    item_id = transfer["items"][0]["id"]
    base = f"/medstock/transfers/{transfer['id']}/items/{item_id}"
    supplier = auth_headers(pharmacist(hospital))

    approved = client.post(f"{base}/approve", headers=supplier, json={"approved_quantity": 80})
    assert approved.status_code == 200
    assert approved.json()["status"] == "APPROVED"
    assert approved.json()["approved_at"] is not None

    batches = client.get(
        f"/medstock/departments/{hospital.pharmacy.id}/products/{hospital.product.id}/batches",
        headers=supplier,
    )
    assert batches.status_code == 200
    assert [row["lot_number"] for row in batches.json()["rows"]] == ["X", "Y"]

    prepared = client.post(
        f"{base}/prepare",
        headers=supplier,
        json={"batches": [{"batch_id": str(batch_x.id), "quantity": 50}, {"batch_id": str(batch_y.id), "quantity": 30}]},
    )
    assert prepared.status_code == 200
    item = prepared.json()["items"][0]
    assert item["prepared_quantity"] == 80
    assert [(row["lot_number"], row["quantity"]) for row in item["batches"]] == [("X", 50), ("Y", 30)]

    delivered = client.post(f"{base}/deliver", headers=auth_headers(nurse(hospital)), json={"received_quantity": 80})
    assert delivered.status_code == 200
    payload = delivered.json()
    assert payload["status"] == "COMPLETED"
    assert payload["items"][0]["received_quantity"] == 80
    assert [entry["action"] for entry in payload["history"]][0] == "DELIVERED"
    assert department_total(db_session, hospital.ward.id, hospital.product.id) == 80

    history = client.get(f"/medstock/transfers/{transfer['id']}/history", headers=supplier)
    assert [entry["action"] for entry in history.json()["rows"]] == ["DELIVERED", "PREPARED", "APPROVED", "CREATED"]


def test_approve_all_and_cancel_item(client, db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=50)
    transfer = _create(client, hospital, quantity=20).json()
    supplier = auth_headers(pharmacist(hospital))

    response = client.post(f"/medstock/transfers/{transfer['id']}/approve-all", headers=supplier, json={})
    assert response.status_code == 200
    assert response.json()["items"][0]["approved_quantity"] == 20

    item_id = transfer["items"][0]["id"]
    client.post(
        f"/medstock/transfers/{transfer['id']}/items/{item_id}/prepare",
        headers=supplier,
        json={"batches": [{"batch_id": str(batch.id), "quantity": 20}]},
    )
    assert batch_counts(db_session, batch.id) == (30, 20, 50)

    cancelled = client.post(
        f"/medstock/transfers/{transfer['id']}/items/{item_id}/cancel",
        headers=auth_headers(admin(hospital)),
        json={"reason": "สินค้าหมด"},
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"
    assert batch_counts(db_session, batch.id) == (50, 0, 50)


def test_error_envelopes(client, db_session):
    hospital = create_hospital(db_session)
    batch = add_batch(db_session, hospital, lot="L1", quantity=10)
    transfer = _create(client, hospital, quantity=20).json()
    item_id = transfer["items"][0]["id"]
    base = f"/medstock/transfers/{transfer['id']}/items/{item_id}"
    supplier = auth_headers(pharmacist(hospital))

    too_much = client.post(f"{base}/approve", headers=supplier, json={"approved_quantity": 21})
    assert too_much.status_code == 422
    assert too_much.json()["code"] == "VALIDATION_ERROR"
    assert too_much.json()["trace_id"]

    denied = client.post(f"{base}/approve", headers=auth_headers(nurse(hospital)), json={"approved_quantity": 5})
    assert denied.status_code == 403
    assert denied.json()["code"] == "PERMISSION_DENIED"
    assert denied.json()["details"]["operation"] == "approve_item"

    assert client.post(f"{base}/approve", headers=supplier, json={"approved_quantity": 20}).status_code == 200
    again = client.post(f"{base}/approve", headers=supplier, json={"approved_quantity": 20})
    assert again.status_code == 409
    assert again.json()["code"] == "INVALID_TRANSITION"

    short = client.post(
        f"{base}/prepare",
        headers=supplier,
        json={"batches": [{"batch_id": str(batch.id), "quantity": 15}]},
    )
    assert short.status_code == 409
    assert short.json()["code"] == "INSUFFICIENT_STOCK"

    blocked = client.post(
        f"/medstock/transfers/{transfer['id']}/cancel",
        headers=auth_headers(admin(hospital)),
        json={"reason": "duplicate"},
    )
    assert blocked.status_code == 403

    malformed = client.post(f"{base}/deliver", headers=auth_headers(nurse(hospital)), json={"received_quantity": "x"})
    assert malformed.status_code == 422
    assert malformed.json()["details"]["errors"][0]["field"] == "received_quantity"


def test_cancel_transfer_over_http(client, db_session):
    hospital = create_hospital(db_session)
    transfer = _create(client, hospital, quantity=5).json()

    response = client.post(
        f"/medstock/transfers/{transfer['id']}/cancel",
        headers=auth_headers(admin(hospital, role="OWNER")),
        json={"reason": "entered twice"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "CANCELLED"
    assert payload["cancel_reason"] == "entered twice"
    assert payload["allowed_actions"]["can_cancel_transfer"] is True


def test_authentication_and_organization_scope(client, db_session):
    hospital = create_hospital(db_session)
    foreign = create_hospital(db_session, suffix="b")
    transfer = _create(client, hospital, quantity=5).json()

    missing = client.get("/medstock/transfers")
    assert missing.status_code == 401
    assert missing.json()["code"] == "INVALID_TOKEN"

    garbage = client.get("/medstock/transfers", headers={"Authorization": "Bearer not-a-token"})
    assert garbage.status_code == 401

    hidden = client.get(f"/medstock/transfers/{transfer['id']}", headers=auth_headers(admin(foreign)))
    assert hidden.status_code == 404
    assert hidden.json()["code"] == "NOT_FOUND"

    listing = client.get("/medstock/transfers", headers=auth_headers(admin(foreign)))
    assert listing.json()["pagination"]["total"] == 0

    cross = _create(client, hospital, headers=auth_headers(admin(foreign)))
    assert cross.status_code == 404


def test_list_filters_sorting_and_stats(client, db_session):
    hospital = create_hospital(db_session)
    amox = add_product(db_session, hospital, code="AMOX-250")
    viewer = auth_headers(admin(hospital))
    normal = _create(client, hospital, title="Night shift top-up").json()
    critical = _create(client, hospital, title="Sepsis kit", priority="CRITICAL").json()
    urgent = _create(client, hospital, title="Urgent antibiotics", priority="URGENT").json()
    client.post(
        f"/medstock/transfers/{urgent['id']}/items/{urgent['items'][0]['id']}/approve",
        headers=auth_headers(pharmacist(hospital)),
        json={"approved_quantity": 10},
    )
    assert amox.code == "AMOX-250"

    by_priority = client.get("/medstock/transfers", headers=viewer, params={"sort_by": "priority"}).json()
    assert [row["id"] for row in by_priority["rows"]] == [critical["id"], urgent["id"], normal["id"]]

    approved = client.get("/medstock/transfers", headers=viewer, params={"status": "APPROVED"}).json()
    assert [row["id"] for row in approved["rows"]] == [urgent["id"]]

    searched = client.get("/medstock/transfers", headers=viewer, params={"search": "sepsis"}).json()
    assert [row["code"] for row in searched["rows"]] == [critical["code"]]

    paged = client.get("/medstock/transfers", headers=viewer, params={"limit": 2, "page": 2}).json()
    assert paged["pagination"] == {"page": 2, "limit": 2, "total": 3, "total_pages": 2}
    assert len(paged["rows"]) == 1

    incoming = client.get(f"/medstock/departments/{hospital.ward.id}/transfers/incoming", headers=viewer).json()
    outgoing = client.get(f"/medstock/departments/{hospital.ward.id}/transfers/outgoing", headers=viewer).json()
    assert incoming["pagination"]["total"] == 3
    assert outgoing["pagination"]["total"] == 0

    stats = client.get("/medstock/transfers/stats", headers=viewer).json()
    assert stats == {"total": 3, "pending": 2, "approved": 1, "prepared": 0, "completed": 0, "cancelled": 0}

    invalid = client.get("/medstock/transfers", headers=viewer, params={"limit": 1000})
    assert invalid.status_code == 422
    unknown_status = client.get("/medstock/transfers", headers=viewer, params={"status": "LOST"})
    assert unknown_status.json()["code"] == "VALIDATION_ERROR"


def test_list_direction_and_mixed_timezone_dates(client, db_session):
    hospital = create_hospital(db_session)
    viewer = auth_headers(admin(hospital))
    _create(client, hospital, title="Night shift top-up")
    _create(client, hospital, title="Sepsis kit", priority="CRITICAL")

    ward = str(hospital.ward.id)
    incoming = client.get(
        "/medstock/transfers", headers=viewer, params={"department_id": ward, "direction": "incoming"}
    ).json()
    outgoing = client.get(
        "/medstock/transfers", headers=viewer, params={"department_id": ward, "direction": "outgoing"}
    ).json()
    assert incoming["pagination"]["total"] == 2
    assert outgoing["pagination"]["total"] == 0
    sideways = client.get("/medstock/transfers", headers=viewer, params={"direction": "sideways"})
    assert sideways.status_code == 422

    mixed = client.get(
        "/medstock/transfers",
        headers=viewer,
        params={"date_from": "2000-01-01T00:00:00Z", "date_to": "2100-01-01T00:00:00"},
    )
    assert mixed.status_code == 200
    assert mixed.json()["pagination"]["total"] == 2

    offset = client.get(
        "/medstock/transfers",
        headers=viewer,
        params={"date_from": "2100-01-01T05:00:00+05:00", "date_to": "2100-01-01T00:00:00"},
    )
    assert offset.status_code == 200
    assert offset.json()["pagination"]["total"] == 0

    reversed_range = client.get(
        "/medstock/transfers",
        headers=viewer,
        params={"date_from": "2100-01-02T00:00:00Z", "date_to": "2100-01-01T00:00:00"},
    )
    assert reversed_range.status_code == 422
    assert reversed_range.json()["code"] == "VALIDATION_ERROR"


def test_batches_flag_expiry(client, db_session):
    hospital = create_hospital(db_session)
    add_batch(db_session, hospital, lot="SOON", quantity=5, expiry=date.today() + timedelta(days=10))
    add_batch(db_session, hospital, lot="UNDATED", quantity=5)

    response = client.get(
        f"/medstock/departments/{hospital.pharmacy.id}/products/{hospital.product.id}/batches",
        headers=auth_headers(pharmacist(hospital)),
    )

    rows = response.json()["rows"]
    assert [row["lot_number"] for row in rows] == ["SOON", "UNDATED"]
    assert rows[0]["expiring_soon"] is True
    assert rows[1]["expiring_soon"] is False
    assert rows[1]["expired"] is False


def test_transition_metrics_exposed(client, db_session):
    hospital = create_hospital(db_session)
    _create(client, hospital, quantity=5)

    response = client.get("/medstock/ops/metrics")

    assert response.status_code == 200
    if metrics.enabled:
        assert 'transfer_transitions_total{action="transfers.create"}' in response.text
