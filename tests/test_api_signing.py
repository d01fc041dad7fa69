import base64
from uuid import uuid4

from fastapi.testclient import TestClient

from tests.conftest import INITIATOR, SIGNATURE_DATA_URL, build_pdf, default_fields

API = "/api/v1/signing-requests"


def as_user(email: str) -> dict[str, str]:
    return {"X-User-Email": email}


def create_request(client: TestClient, **overrides) -> dict:
    payload = {
        "title": "Lease agreement",
        "document_base64": base64.b64encode(build_pdf()).decode(),
        "document_filename": "lease.pdf",
        "signers": [
            {"email": "alice@example.com", "name": "Alice", "order": 1},
            {"email": "bob@example.com", "name": "Bob", "order": 2},
        ],
        "fields": default_fields(2),
    }
    payload.update(overrides)
    response = client.post(API, json=payload, headers=as_user(INITIATOR))
    assert response.status_code == 201, response.text
    return response.json()


def sign(client: TestClient, request_id: str, email: str):
    body = {"signature": {"signature_image": SIGNATURE_DATA_URL, "signer_name": email.split("@")[0]}}
    return client.post(f"{API}/{request_id}/sign", json=body, headers=as_user(email))


def test_sequential_signing_flow(client: TestClient, notifier) -> None:
    created = create_request(client)
    request_id = created["id"]
    assert created["status"] == "initiated"
    assert [signer["email"] for signer in created["signers"]] == ["alice@example.com", "bob@example.com"]
    assert notifier.types_for("alice@example.com") == ["signature_requested"]

    verdict = client.get(f"{API}/{request_id}/can-sign", headers=as_user("bob@example.com")).json()
    assert verdict["can_sign"] is False
    assert verdict["pending_signers"][0]["email"] == "alice@example.com"

    blocked = sign(client, request_id, "bob@example.com")
    assert blocked.status_code == 409
    assert blocked.json()["detail"]["error_kind"] == "order_violation"

    viewed = client.post(f"{API}/{request_id}/view", headers=as_user("alice@example.com"))
    assert viewed.json()["status"] == "viewed"

    assert sign(client, request_id, "alice@example.com").json()["status"] == "in_progress"
    completed = sign(client, request_id, "bob@example.com").json()
    assert completed["status"] == "completed"
    assert completed["render_status"] == "generated"
    assert completed["final_document_ref"]
    assert "document_completed" in notifier.types_for(INITIATOR)

    fetched = client.get(f"{API}/{request_id}", headers=as_user(INITIATOR)).json()
    assert fetched["completed_at"] is not None


def test_decline_halts_sequential_request(client: TestClient) -> None:
    request_id = create_request(client)["id"]

    response = client.post(
        f"{API}/{request_id}/decline", json={"reason": "Wrong address"}, headers=as_user("alice@example.com")
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "declined"
    assert body["decline_reason"] == "Wrong address"


def test_unknown_request_is_404(client: TestClient) -> None:
    response = client.get(f"{API}/{uuid4()}", headers=as_user(INITIATOR))

    assert response.status_code == 404
    assert response.json()["detail"]["error_kind"] == "not_found"


def test_missing_identity_header_is_rejected(client: TestClient) -> None:
    response = client.get(f"{API}/{uuid4()}/can-sign")

    assert response.status_code == 401


def test_extend_with_invalid_date_is_422(client: TestClient) -> None:
    request_id = create_request(client)["id"]

    response = client.post(f"{API}/{request_id}/extend", json={"new_expiry": "soon"}, headers=as_user(INITIATOR))

    assert response.status_code == 422
    assert response.json()["detail"]["error_kind"] == "invalid_argument"


def test_cancel_then_retry_render_is_a_noop(client: TestClient, notifier) -> None:
    request_id = create_request(client)["id"]

    cancelled = client.post(f"{API}/{request_id}/cancel", json={"reason": "Superseded"}, headers=as_user(INITIATOR))
    assert cancelled.json()["status"] == "cancelled"
    assert "request_cancelled" in notifier.types_for("bob@example.com")

    retried = client.post(f"{API}/{request_id}/retry-render", headers=as_user(INITIATOR))
    assert retried.status_code == 200
    assert retried.json()["rendered"] is False


def test_run_checks_endpoint_returns_a_report(client: TestClient) -> None:
    create_request(client)

    response = client.post("/api/v1/jobs/run-checks", json={"auto_reminder_days": [3]})

    assert response.status_code == 200
    body = response.json()
    assert body["total_errors"] == 0
    assert body["dispatched"]["failed"] == 0


def test_health_endpoints(client: TestClient) -> None:
    assert client.get("/health/live").json() == {"status": "ok"}
    assert client.get("/health/ready").json() == {"status": "ready"}


def test_audit_trail_endpoint(client: TestClient) -> None:
    request_id = create_request(client)["id"]
    sign(client, request_id, "alice@example.com")

    response = client.get(f"{API}/{request_id}/audit", headers=as_user(INITIATOR))

    assert response.status_code == 200
    assert {item["event_type"] for item in response.json()} == {"request_initiated", "signature_applied"}
