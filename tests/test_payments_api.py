"""Tests for the payment, booking and video call HTTP endpoints."""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from teletherapy.api.app import create_app
from teletherapy.domain.outcomes import StoreUnavailableError
from teletherapy.domain.payments import CallbackPayload
from teletherapy.domain.sessions import PaymentStatus, SessionStatus
from tests.conftest import (
    FakeMpesaClient,
    InMemorySessionRepository,
    RecordingAlertSink,
    make_session,
)


def _callback_body(
    checkout_request_id: str = "ws_CO_1", result_code: int = 0
) -> dict[str, object]:
    stk_callback: dict[str, object] = {
        "MerchantRequestID": "merchant-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully."
        if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0:
        stk_callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 2500},
                {"Name": "MpesaReceiptNumber", "Value": "QK7A1B2C3D"},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20260302090130},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": stk_callback}}


def test_health_endpoint(container) -> None:
    client = TestClient(create_app(container))

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_booking_endpoints_walk_to_approved(
    container, session_repository: InMemorySessionRepository
) -> None:
    client = TestClient(create_app(container))

    created = client.post(
        "/sessions",
        json={
            "clientId": str(uuid4()),
            "psychologistId": str(uuid4()),
            "sessionType": "Individual",
            "sessionDate": "2026-03-05T09:00:00+00:00",
            "price": "2500",
        },
    )
    session_id = created.json()["id"]
    submitted = client.post(f"/sessions/{session_id}/submit")
    approved = client.post(f"/sessions/{session_id}/approve")
    again = client.post(f"/sessions/{session_id}/approve")
    unknown = client.post(f"/sessions/{session_id}/archive")

    assert created.status_code == 201
    assert created.json()["status"] == "Requested"
    assert submitted.json()["session"]["status"] == "Pending Approval"
    assert approved.json()["session"]["status"] == "Approved"
    assert again.status_code == 400
    assert again.json()["code"] == "invalid_transition"
    assert unknown.status_code == 404
    assert unknown.json() == {"detail": "Not Found"}
    assert len(session_repository.sessions) == 1


def test_decline_and_cancel_endpoints(
    container, session_repository: InMemorySessionRepository
) -> None:
    client = TestClient(create_app(container))
    pending = session_repository.create_session(
        make_session(status=SessionStatus.PENDING_APPROVAL)
    )
    approved = session_repository.create_session(
        make_session(status=SessionStatus.APPROVED)
    )

    declined = client.post(f"/sessions/{pending.id}/decline")
    cancelled = client.post(f"/sessions/{approved.id}/cancel")
    missing = client.post(f"/sessions/{uuid4()}/cancel")

    assert declined.json()["session"]["status"] == "Declined"
    assert cancelled.json()["session"]["status"] == "Cancelled"
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"


def test_payment_flow_over_http(
    container,
    session_repository: InMemorySessionRepository,
    mpesa_client: FakeMpesaClient,
) -> None:
    client = TestClient(create_app(container))
    session = session_repository.create_session(
        make_session(status=SessionStatus.APPROVED)
    )

    initiated = client.post(
        "/payments/initiate",
        json={"sessionId": str(session.id), "phoneNumber": "0712345678"},
    )
    in_flight = client.post(
        "/payments/initiate",
        json={"sessionId": str(session.id), "phoneNumber": "0712345678"},
    )
    callback = client.post("/payments/callback", json=_callback_body())
    replay = client.post("/payments/callback", json=_callback_body())
    status = client.get(f"/payments/status/{session.id}")

    assert initiated.status_code == 200
    assert initiated.json()["success"] is True
    assert initiated.json()["checkoutRequestID"] == "ws_CO_1"
    assert in_flight.status_code == 409
    assert in_flight.json()["code"] == "payment_already_in_flight"
    assert callback.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    assert replay.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    assert len(mpesa_client.pushes) == 1

    body = status.json()
    assert body["status"] == "Confirmed"
    assert body["paymentStatus"] == "Confirmed"
    assert body["lastResult"]["transactionID"] == "QK7A1B2C3D"
    assert body["lastResult"]["amount"] == "2500"
    assert body["lastResult"]["phoneNumber"] == "254712345678"
    stored = session_repository.sessions[session.id]
    assert stored.payment_result is not None
    assert stored.payment_result.transaction_date is not None


def test_failed_payment_status_carries_user_message(
    container, session_repository: InMemorySessionRepository
) -> None:
    client = TestClient(create_app(container))
    session = session_repository.create_session(
        make_session(status=SessionStatus.APPROVED)
    )
    client.post(
        "/payments/initiate",
        json={"sessionId": str(session.id), "phoneNumber": "254712345678"},
    )

    client.post("/payments/callback", json=_callback_body(result_code=1032))
    status = client.get(f"/payments/status/{session.id}")

    body = status.json()
    assert body["paymentStatus"] == "Failed"
    assert body["lastResult"]["resultCode"] == 1032
    assert "cancelled" in body["lastResult"]["message"].lower()


def test_initiate_with_invalid_phone(
    container, session_repository: InMemorySessionRepository
) -> None:
    client = TestClient(create_app(container))
    session = session_repository.create_session(
        make_session(status=SessionStatus.APPROVED)
    )

    response = client.post(
        "/payments/initiate",
        json={"sessionId": str(session.id), "phoneNumber": "12345"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_phone_number"


def test_callback_with_missing_stk_callback(container) -> None:
    client = TestClient(create_app(container))

    response = client.post("/payments/callback", json={"Body": {}})

    assert response.json() == {
        "ResultCode": 1,
        "ResultDesc": "Invalid callback structure",
    }


def test_callback_errors_are_acknowledged_and_alerted(
    container, alerts: RecordingAlertSink, monkeypatch
) -> None:
    def boom(payload: CallbackPayload) -> None:
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(container.payment_service, "process_callback", boom)
    client = TestClient(create_app(container))

    response = client.post("/payments/callback", json=_callback_body())

    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    assert alerts.critical_alerts


def test_status_for_unknown_session(container) -> None:
    client = TestClient(create_app(container))

    response = client.get(f"/payments/status/{uuid4()}")

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_store_outage_returns_service_unavailable(
    container,
    session_repository: InMemorySessionRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def unavailable(session_id) -> None:  # type: ignore[no-untyped-def]
        raise StoreUnavailableError("connection refused")

    monkeypatch.setattr(session_repository, "get_session", unavailable)
    client = TestClient(create_app(container))

    response = client.get(f"/payments/status/{uuid4()}")

    assert response.status_code == 503
    assert response.json()["code"] == "transient_failure"


def test_video_endpoints(
    container, session_repository: InMemorySessionRepository
) -> None:
    client = TestClient(create_app(container))
    paid = session_repository.create_session(
        make_session(
            status=SessionStatus.CONFIRMED, payment_status=PaymentStatus.CONFIRMED
        )
    )
    unpaid = session_repository.create_session(
        make_session(status=SessionStatus.CONFIRMED)
    )

    started = client.post(
        f"/sessions/{paid.id}/video/start", json={"actorId": str(paid.client_id)}
    )
    twice = client.post(
        f"/sessions/{paid.id}/video/start", json={"actorId": str(paid.client_id)}
    )
    ended = client.post(
        f"/sessions/{paid.id}/video/end", json={"actorId": str(paid.psychologist_id)}
    )
    refused = client.post(
        f"/sessions/{unpaid.id}/video/start", json={"actorId": str(unpaid.client_id)}
    )
    stranger = client.post(
        f"/sessions/{paid.id}/video/end", json={"actorId": str(uuid4())}
    )

    assert started.status_code == 200
    assert started.json()["session"]["status"] == "In Progress"
    assert twice.status_code == 409
    assert ended.json()["session"]["status"] == "Completed"
    assert ended.json()["session"]["videoCall"]["durationMinutes"] == 0
    assert refused.status_code == 400
    assert refused.json()["code"] == "payment_not_confirmed"
    assert stranger.status_code == 403


def test_reconcile_endpoint(
    container, session_repository: InMemorySessionRepository
) -> None:
    client = TestClient(create_app(container))
    session = session_repository.create_session(
        make_session(status=SessionStatus.APPROVED)
    )

    response = client.post(f"/payments/{session.id}/reconcile")

    assert response.status_code == 200
    assert response.json()["session"]["paymentStatus"] == "Pending"
