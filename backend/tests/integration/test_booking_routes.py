"""
Integration tests for the booking API.
"""
from decimal import Decimal
from uuid import uuid4

import pytest

from src.api.app import app
from src.api.dependencies import get_gateway

from conftest import DecliningGateway


@pytest.fixture
def as_client(auth_headers):
    return auth_headers("client-1", "client")


@pytest.fixture
def as_provider(auth_headers):
    return auth_headers("provider-1", "provider")


@pytest.fixture
def as_admin(auth_headers):
    return auth_headers("admin-1", "admin")


def create(client, headers, **body):
    payload = {"provider_price": "500", "payment_preference": "pay_later"}
    payload.update(body)
    response = client.post("/bookings", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def command(client, booking_id, headers, name, **body):
    return client.post(
        f"/bookings/{booking_id}/commands",
        json={"command": name, **body},
        headers=headers,
    )


@pytest.mark.integration
def test_create_booking(client, as_client):
    data = create(client, as_client, title="Fix sink", service_category="plumbing")

    assert data["status"] == "pending"
    assert data["client_id"] == "client-1"
    assert data["version"] == 1
    assert Decimal(data["system_fee"]) == Decimal("25")
    assert Decimal(data["total_amount"]) == Decimal("525")
    assert Decimal(data["amount_due"]) == Decimal("525")
    assert set(data["allowed_commands"]) == {"send_offer", "cancel"}


@pytest.mark.integration
def test_only_clients_create_bookings(client, as_provider):
    response = client.post(
        "/bookings",
        json={"provider_price": "500", "payment_preference": "pay_later"},
        headers=as_provider,
    )
    assert response.status_code == 403
    assert response.json()["details"]["code"] == "unauthorized"


@pytest.mark.integration
def test_create_rejects_negative_price(client, as_client):
    response = client.post(
        "/bookings",
        json={"provider_price": "-1", "payment_preference": "pay_later"},
        headers=as_client,
    )
    assert response.status_code == 422
    assert response.json()["details"]["code"] == "guard_violation"


@pytest.mark.integration
def test_requires_bearer_token(client):
    response = client.get(f"/bookings/{uuid4()}")
    assert response.status_code == 401


@pytest.mark.integration
def test_rejects_invalid_token(client):
    response = client.get(f"/bookings/{uuid4()}", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


@pytest.mark.integration
def test_system_role_token_is_rejected(client, auth_headers):
    response = client.get(f"/bookings/{uuid4()}", headers=auth_headers("gw", "system"))
    assert response.status_code == 401


@pytest.mark.integration
def test_unknown_booking(client, as_client):
    response = client.get(f"/bookings/{uuid4()}", headers=as_client)
    assert response.status_code == 404


@pytest.mark.integration
def test_visibility(client, as_client, as_provider, auth_headers):
    booking = create(client, as_client)

    assert client.get(f"/bookings/{booking['id']}", headers=auth_headers("client-2", "client")).status_code == 403
    # providers see nothing until an admin approves
    assert client.get(f"/bookings/{booking['id']}", headers=as_provider).status_code == 403

    command(client, booking["id"], auth_headers("admin-1", "admin"), "approve")
    response = client.get(f"/bookings/{booking['id']}", headers=as_provider)
    assert response.status_code == 200
    assert set(response.json()["allowed_commands"]) == {"accept_job", "cancel"}


@pytest.mark.integration
def test_approve_notifies_client_and_providers(client, as_client, as_admin, push_provider):
    booking = create(client, as_client)

    response = command(client, booking["id"], as_admin, "approve", expected_version=1)

    assert response.status_code == 200
    data = response.json()
    assert data["booking"]["admin_approved"] is True
    assert data["booking"]["version"] == 2
    assert {i["kind"] for i in data["intents"]} == {"NotifyClient", "NotifyProvider"}
    recipients = {m["to"] for m in push_provider.sent}
    assert recipients == {"client-1", "topic:new_jobs"}


@pytest.mark.integration
def test_stale_version_conflict(client, as_client, as_admin, as_provider):
    booking = create(client, as_client)
    command(client, booking["id"], as_admin, "approve", expected_version=1)

    response = command(client, booking["id"], as_provider, "accept_job", expected_version=1)

    assert response.status_code == 409
    details = response.json()["details"]
    assert details["code"] == "version_conflict"
    assert details["current_version"] == 2


@pytest.mark.integration
def test_invalid_transition(client, as_client, as_admin, as_provider):
    booking = create(client, as_client)
    command(client, booking["id"], as_admin, "approve")
    command(client, booking["id"], as_provider, "accept_job")

    response = command(client, booking["id"], as_provider, "mark_arrived")

    assert response.status_code == 409
    assert response.json()["details"]["code"] == "invalid_transition"


@pytest.mark.integration
def test_command_validation(client, as_client):
    booking = create(client, as_client)

    response = command(client, booking["id"], as_client, "cancel", expected_version=0)
    assert response.status_code == 422


@pytest.mark.integration
def test_full_lifecycle_over_http(client, as_client, as_admin, as_provider):
    booking = create(client, as_client)
    booking_id = booking["id"]

    steps = [
        (as_admin, "approve", {}),
        (as_provider, "accept_job", {}),
        (as_provider, "mark_traveling", {}),
        (as_provider, "mark_arrived", {}),
        (as_provider, "start_work", {}),
        (as_provider, "mark_work_done", {}),
        (as_client, "confirm_completion", {}),
        (as_client, "pay", {"payload": {"method": "gcash", "source_ref": "src_1"}}),
        (as_provider, "confirm_payment", {}),
    ]
    for headers, name, body in steps:
        response = command(client, booking_id, headers, name, **body)
        assert response.status_code == 200, (name, response.text)

    data = response.json()["booking"]
    assert data["status"] == "completed"
    assert data["payment_status"] == "released"
    assert Decimal(data["final_amount"]) == Decimal("525")

    review = client.post(f"/bookings/{booking_id}/review", json={"rating": 5}, headers=as_client)
    assert review.status_code == 200
    assert review.json()["review_rating"] == 5

    again = client.post(f"/bookings/{booking_id}/review", json={"rating": 4}, headers=as_client)
    assert again.status_code == 422


@pytest.mark.integration
def test_declined_payment_returns_402_and_notifies(client, as_client, as_admin, as_provider, push_provider):
    app.dependency_overrides[get_gateway] = lambda: DecliningGateway()
    booking = create(client, as_client, payment_preference="pay_first")
    command(client, booking["id"], as_admin, "approve")
    command(client, booking["id"], as_provider, "accept_job")
    push_provider.sent.clear()

    response = command(
        client, booking["id"], as_client, "pay_upfront",
        payload={"method": "gcash", "source_ref": "src_1"},
    )

    assert response.status_code == 402
    body = response.json()
    assert body["details"]["code"] == "payment_capture_failed"
    assert body["details"]["status"] == "accepted"
    assert body["details"]["reason"] == "insufficient funds"
    assert [m["title"] for m in push_provider.sent] == ["Payment failed"]

    current = client.get(f"/bookings/{booking['id']}", headers=as_client).json()
    assert current["status"] == "accepted"
    assert current["is_paid_upfront"] is False


@pytest.mark.integration
def test_provider_job_listing(client, as_client, as_admin, as_provider, auth_headers):
    open_job = create(client, as_client)
    command(client, open_job["id"], as_admin, "approve")
    create(client, as_client)

    response = client.get("/provider/bookings", headers=as_provider)

    assert response.status_code == 200
    assert [b["id"] for b in response.json()] == [open_job["id"]]
    assert client.get("/provider/bookings", headers=as_client).status_code == 403


@pytest.mark.integration
def test_admin_revenue(client, as_client, as_admin, as_provider):
    booking = create(client, as_client, service_category="cleaning")
    booking_id = booking["id"]
    for headers, name, body in [
        (as_admin, "approve", {}),
        (as_provider, "accept_job", {}),
        (as_provider, "mark_traveling", {}),
        (as_provider, "mark_arrived", {}),
        (as_provider, "start_work", {}),
        (as_provider, "mark_work_done", {}),
        (as_client, "confirm_completion", {}),
        (as_client, "pay", {"payload": {"method": "cash"}}),
        (as_provider, "confirm_payment", {}),
    ]:
        assert command(client, booking_id, headers, name, **body).status_code == 200

    response = client.get("/admin/revenue", headers=as_admin)

    assert response.status_code == 200
    data = response.json()
    assert data["booking_count"] == 1
    assert data["system_fee_total"] == "25.00"
    assert data["gross_total"] == "525.00"
    assert data["by_category"] == {"cleaning": "25.00"}

    assert client.get("/admin/revenue", headers=as_client).status_code == 403
    bad_range = client.get(
        "/admin/revenue",
        params={"start": "2026-03-02T00:00:00Z", "end": "2026-03-01T00:00:00Z"},
        headers=as_admin,
    )
    assert bad_range.status_code == 400
