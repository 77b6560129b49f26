"""
HTTP surface: routing, caller identity, error translation and a full
arrival -> reception -> conflict -> approval walk-through.
"""
from datetime import datetime, timedelta, timezone

from workshop.status import AppointmentStatus as S

from tests.conftest import CUSTOMER_ID, OTHER_CUSTOMER_ID, STAFF_ID, TECH_ID, headers

CUSTOMER = headers(CUSTOMER_ID, "customer")
STAFF = headers(STAFF_ID, "staff")
TECH = headers(TECH_ID, "technician")


def _book(client, **overrides):
    body = {
        "customer_id": CUSTOMER_ID,
        "vehicle_id": 7,
        "scheduled_date": (datetime.now(timezone.utc) + timedelta(days=3)).isoformat(),
        "scheduled_time": "10:00",
        "assigned_technician_id": TECH_ID,
    }
    body.update(overrides)
    return client.post("/appointments", json=body, headers=CUSTOMER)


def test_book_and_read_appointment(client):
    response = _book(client)

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["core_status"] == "Scheduled"
    assert data["appointment_number"].startswith("APT")

    read = client.get(f"/appointments/{data['id']}", headers=CUSTOMER)
    assert read.status_code == 200
    assert read.json()["data"]["id"] == data["id"]


def test_customers_cannot_read_other_appointments(client):
    appointment_id = _book(client).json()["data"]["id"]

    response = client.get(f"/appointments/{appointment_id}", headers=headers(OTHER_CUSTOMER_ID, "customer"))

    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


def test_missing_identity_headers(client):
    response = client.get("/appointments/1")

    assert response.status_code == 403
    assert response.json() == {"success": False, "error": "forbidden", "message": "Missing caller identity"}


def test_system_role_cannot_be_claimed(client):
    appointment_id = _book(client).json()["data"]["id"]

    response = client.post(
        f"/appointments/{appointment_id}/status",
        json={"status": "confirmed"},
        headers=headers(99, "system"),
    )

    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"
    assert client.get(f"/appointments/{appointment_id}", headers=STAFF).json()["data"]["status"] == "pending"


def test_invalid_body_is_a_validation_error(client):
    response = _book(client, scheduled_time="ten o'clock")
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"

    response = client.post("/appointments", json={"vehicle_id": 1}, headers=CUSTOMER)
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_disallowed_transition_maps_to_409(client):
    appointment_id = _book(client).json()["data"]["id"]

    response = client.post(f"/appointments/{appointment_id}/status", json={"status": "completed"}, headers=STAFF)

    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "transition_not_allowed"
    assert body["details"]["current_status"] == "pending"


def test_unknown_appointment_is_404(client):
    response = client.post("/appointments/999/status", json={"status": "confirmed"}, headers=STAFF)

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_cancellation_over_http(client):
    appointment_id = _book(client, deposit_paid=True).json()["data"]["id"]

    check = client.get(f"/appointments/{appointment_id}/cancel-check", headers=CUSTOMER).json()["data"]
    assert check["can_cancel"] is True
    assert check["refund_percentage"] == 100

    response = client.post(
        f"/appointments/{appointment_id}/cancel-request",
        json={"reason": "Moving away", "refund_method": "cash"},
        headers=CUSTOMER,
    )
    assert response.json()["data"]["status"] == "cancel_requested"

    response = client.post(f"/appointments/{appointment_id}/approve-cancellation", json={}, headers=CUSTOMER)
    assert response.status_code == 403

    client.post(f"/appointments/{appointment_id}/approve-cancellation", json={"notes": "ok"}, headers=STAFF)
    response = client.post(
        f"/appointments/{appointment_id}/process-refund",
        json={"refund_transaction_id": "TXN-42"},
        headers=STAFF,
    )
    data = response.json()["data"]
    assert data["status"] == "cancelled"
    assert data["reason_code"] == "cancelled"


def test_reschedule_and_customer_actions(client):
    appointment_id = _book(client).json()["data"]["id"]
    new_date = (datetime.now(timezone.utc) + timedelta(days=10)).isoformat()

    response = client.post(
        f"/appointments/{appointment_id}/reschedule",
        json={"new_date": new_date, "reason": "Work trip", "customer_agreed": True},
        headers=CUSTOMER,
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "confirmed"

    actions = client.get(f"/appointments/{appointment_id}/customer-actions", headers=CUSTOMER).json()["data"]
    assert actions["reschedule_count"] == 1
    assert actions["remaining_reschedules"] == 1


def test_reschedule_accepts_utc_designator(client):
    appointment_id = _book(client).json()["data"]["id"]
    new_date = (datetime.now(timezone.utc) + timedelta(days=8)).strftime("%Y-%m-%dT09:00:00Z")

    response = client.post(
        f"/appointments/{appointment_id}/reschedule",
        json={"new_date": new_date, "reason": "Parts delayed", "new_time": "09:00", "customer_agreed": True},
        headers=CUSTOMER,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "confirmed"
    assert data["scheduled_time"] == "09:00"
    assert datetime.fromisoformat(data["scheduled_date"]) == datetime.fromisoformat(new_date.replace("Z", "+00:00"))


def test_parts_catalogue(client):
    response = client.post("/parts", json={"part_number": "BP-01", "name": "Brake pad", "current_stock": 4}, headers=STAFF)
    assert response.status_code == 201

    duplicate = client.post("/parts", json={"part_number": "BP-01", "name": "Brake pad"}, headers=STAFF)
    assert duplicate.status_code == 400

    forbidden = client.post("/parts", json={"part_number": "BP-02", "name": "Pad"}, headers=TECH)
    assert forbidden.status_code == 403

    listing = client.get("/parts", headers=TECH).json()
    assert listing["count"] == 1
    assert listing["data"][0]["current_stock"] == 4


def _arrive(client, priority="normal", days=3):
    appointment_id = _book(
        client,
        priority=priority,
        scheduled_date=(datetime.now(timezone.utc) + timedelta(days=days)).isoformat(),
    ).json()["data"]["id"]
    for status in ("confirmed", "customer_arrived"):
        client.post(f"/appointments/{appointment_id}/status", json={"status": status}, headers=STAFF)
    return appointment_id


def test_reception_conflict_and_resolution_flow(client):
    part_id = client.post(
        "/parts", json={"part_number": "OF-9", "name": "Oil filter", "current_stock": 5}, headers=STAFF
    ).json()["data"]["id"]
    urgent = _arrive(client, priority="urgent", days=1)
    normal = _arrive(client, priority="normal", days=2)

    first = client.post(
        f"/appointments/{urgent}/reception",
        json={"parts": [{"part_id": part_id, "quantity": 3}], "vehicle_condition_notes": "Scratched bumper"},
        headers=TECH,
    )
    assert first.status_code == 201
    assert first.json()["data"]["appointment"]["status"] == "reception_created"
    assert first.json()["data"]["conflicts"] == []

    second = client.post(
        f"/appointments/{normal}/reception",
        json={"parts": [{"part_id": part_id, "quantity": 4}]},
        headers=TECH,
    )
    (conflict,) = second.json()["data"]["conflicts"]
    assert conflict["shortfall"] == 2

    stats = client.get("/conflicts/stats", headers=STAFF).json()["data"]
    assert stats["pending"] == 1

    suggestion = client.get(f"/conflicts/{conflict['id']}/suggestion", headers=STAFF).json()["data"]
    actions = [s["suggested_action"] for s in suggestion["suggestions"]]
    assert actions == ["approve", "defer"]
    approve_id = suggestion["suggestions"][0]["request_id"]
    reject_id = suggestion["suggestions"][1]["request_id"]

    reception_id = second.json()["data"]["reception"]["id"]
    check = client.get(f"/conflicts/check-reception/{reception_id}", headers=TECH).json()["data"]
    assert check["has_conflicts"] is True

    approved = client.post(
        f"/conflicts/{conflict['id']}/approve-request", json={"request_id": approve_id}, headers=STAFF
    ).json()["data"]
    assert approved["new_available_stock"] == 2
    assert approved["appointment_status"] == S.RECEPTION_APPROVED.value

    rejected = client.post(
        f"/conflicts/{conflict['id']}/reject-request",
        json={"request_id": reject_id, "reason": "Out of production"},
        headers=STAFF,
    ).json()["data"]
    assert rejected["conflict_status"] == "resolved"
    assert rejected["appointment_status"] == "parts_insufficient"

    again = client.post(f"/conflicts/{conflict['id']}/resolve", json={"approved_request_ids": []}, headers=STAFF)
    assert again.status_code == 400
    assert again.json()["error"] == "precondition_not_met"


def test_conflict_endpoints_require_staff(client):
    assert client.get("/conflicts", headers=TECH).status_code == 403
    assert client.post("/conflicts/detect", json={}, headers=CUSTOMER).status_code == 403
    assert client.get("/conflicts/999", headers=STAFF).status_code == 404


def test_detect_and_restock_over_http(client):
    part_id = client.post(
        "/parts", json={"part_number": "SP-1", "name": "Spark plug", "current_stock": 2}, headers=STAFF
    ).json()["data"]["id"]
    appointment_id = _arrive(client)
    client.post(
        f"/appointments/{appointment_id}/reception",
        json={"parts": [{"part_id": part_id, "quantity": 4}]},
        headers=TECH,
    )

    detected = client.post("/conflicts/detect", json={"part_id": part_id}, headers=STAFF).json()
    assert detected["count"] == 1

    restocked = client.post(f"/parts/{part_id}/restock", json={"quantity": 2}, headers=STAFF).json()["data"]
    assert restocked["part"]["current_stock"] == 0
    assert restocked["conflicts"][0]["status"] == "auto_resolved"

    appointment = client.get(f"/appointments/{appointment_id}", headers=STAFF).json()["data"]
    assert appointment["status"] == "reception_approved"
