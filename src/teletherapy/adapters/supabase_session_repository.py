"""Supabase-backed session repository."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from supabase import Client

from teletherapy.adapters.supabase_queries import run_query
from teletherapy.domain.outcomes import VersionConflictError
from teletherapy.domain.sessions import (
    GatewayCorrelation,
    PaymentAttempt,
    PaymentResult,
    SessionRecord,
    VideoCall,
    parse_payment_status,
    parse_status,
)
from teletherapy.services.sessions import SessionRepository

_TABLE = "therapy_sessions"
_COLUMNS = (
    "id, client_id, psychologist_id, session_type, session_date, price, status, "
    "payment_status, payment_initiated_at, gateway_correlation, payment_result, "
    "payment_attempts, video_call, version"
)


@dataclass
class SupabaseSessionRepository(SessionRepository):
    """Supabase implementation for therapy sessions."""

    client: Client

    def create_session(self, session: SessionRecord) -> SessionRecord:
        """Create a session row and return it."""
        row = {"id": str(session.id), **_to_row(session), "version": session.version}
        response = run_query(self.client.table(_TABLE).insert(row))
        if not response.data:
            raise RuntimeError("Failed to create session")
        return _from_row(response.data[0])

    def get_session(self, session_id: UUID) -> SessionRecord | None:
        """Return a session by id, if present."""
        response = run_query(
            self.client.table(_TABLE)
            .select(_COLUMNS)
            .eq("id", str(session_id))
            .limit(1)
        )
        if not response.data:
            return None
        return _from_row(response.data[0])

    def find_by_checkout_request_id(
        self, checkout_request_id: str
    ) -> SessionRecord | None:
        """Return the session whose in-flight payment has this checkout id."""
        response = run_query(
            self.client.table(_TABLE)
            .select(_COLUMNS)
            .eq("gateway_correlation->>checkout_request_id", checkout_request_id)
            .limit(1)
        )
        if not response.data:
            return None
        return _from_row(response.data[0])

    def commit_session(
        self, session: SessionRecord, expected_version: int
    ) -> SessionRecord:
        """Replace the row only while its version is still ``expected_version``."""
        response = run_query(
            self.client.table(_TABLE)
            .update({**_to_row(session), "version": expected_version + 1})
            .eq("id", str(session.id))
            .eq("version", expected_version)
        )
        if not response.data:
            raise VersionConflictError(
                f"Session {session.id} changed since version {expected_version}"
            )
        return _from_row(response.data[0])

    def list_sessions(self, offset: int, limit: int) -> list[SessionRecord]:
        """Return a page of sessions ordered by creation time."""
        response = run_query(
            self.client.table(_TABLE)
            .select(_COLUMNS)
            .order("created_at")
            .range(offset, offset + limit - 1)
        )
        return [_from_row(row) for row in response.data or []]


def _to_row(session: SessionRecord) -> dict[str, object]:
    correlation = session.gateway_correlation
    result = session.payment_result
    return {
        "client_id": str(session.client_id),
        "psychologist_id": str(session.psychologist_id),
        "session_type": session.session_type,
        "session_date": session.session_date.isoformat(),
        "price": str(session.price),
        "status": str(session.status),
        "payment_status": str(session.payment_status),
        "payment_initiated_at": _iso(session.payment_initiated_at),
        "gateway_correlation": {
            "checkout_request_id": correlation.checkout_request_id,
            "merchant_request_id": correlation.merchant_request_id,
            "requested_at": correlation.requested_at.isoformat(),
        }
        if correlation
        else None,
        "payment_result": {
            "checkout_request_id": result.checkout_request_id,
            "result_code": result.result_code,
            "result_desc": result.result_desc,
            "transaction_id": result.transaction_id,
            "amount": str(result.amount) if result.amount is not None else None,
            "phone_number": result.phone_number,
            "transaction_date": _iso(result.transaction_date),
        }
        if result
        else None,
        "payment_attempts": [
            {
                "timestamp": attempt.timestamp.isoformat(),
                "correlation_id": attempt.correlation_id,
                "phone_number": attempt.phone_number,
                "outcome": attempt.outcome,
            }
            for attempt in session.payment_attempts
        ],
        "video_call": {
            "started_at": _iso(session.video_call.started_at),
            "ended_at": _iso(session.video_call.ended_at),
            "duration_minutes": session.video_call.duration_minutes,
        },
    }


def _from_row(row: dict) -> SessionRecord:
    correlation = row.get("gateway_correlation")
    result = row.get("payment_result")
    video_call = row.get("video_call") or {}
    return SessionRecord(
        id=UUID(row["id"]),
        client_id=UUID(row["client_id"]),
        psychologist_id=UUID(row["psychologist_id"]),
        session_type=row["session_type"],
        session_date=datetime.fromisoformat(row["session_date"]),
        price=Decimal(str(row["price"])),
        status=parse_status(row["status"]),
        payment_status=parse_payment_status(row["payment_status"]),
        payment_initiated_at=_parse_dt(row.get("payment_initiated_at")),
        gateway_correlation=GatewayCorrelation(
            checkout_request_id=correlation["checkout_request_id"],
            merchant_request_id=correlation["merchant_request_id"],
            requested_at=datetime.fromisoformat(correlation["requested_at"]),
        )
        if correlation
        else None,
        payment_result=PaymentResult(
            checkout_request_id=result["checkout_request_id"],
            result_code=int(result["result_code"]),
            result_desc=result.get("result_desc") or "",
            transaction_id=result.get("transaction_id"),
            amount=Decimal(str(result["amount"]))
            if result.get("amount") is not None
            else None,
            phone_number=result.get("phone_number"),
            transaction_date=_parse_dt(result.get("transaction_date")),
        )
        if result
        else None,
        payment_attempts=tuple(
            PaymentAttempt(
                timestamp=datetime.fromisoformat(attempt["timestamp"]),
                correlation_id=attempt.get("correlation_id"),
                phone_number=attempt.get("phone_number"),
                outcome=attempt["outcome"],
            )
            for attempt in row.get("payment_attempts") or []
        ),
        video_call=VideoCall(
            started_at=_parse_dt(video_call.get("started_at")),
            ended_at=_parse_dt(video_call.get("ended_at")),
            duration_minutes=video_call.get("duration_minutes"),
        ),
        version=int(row.get("version") or 0),
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
