"""Domain models for therapy sessions."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from uuid import UUID


class SessionStatus(StrEnum):
    """Lifecycle status of a booked session."""

    REQUESTED = "Requested"
    PENDING_APPROVAL = "Pending Approval"
    APPROVED = "Approved"
    PAYMENT_PENDING = "Payment Pending"
    PAYMENT_SUBMITTED = "Payment Submitted"
    CONFIRMED = "Confirmed"
    PAID = "Paid"
    FORMS_REQUIRED = "Forms Required"
    READY = "Ready"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    DECLINED = "Declined"
    NO_SHOW_CLIENT = "No Show Client"
    NO_SHOW_THERAPIST = "No Show Therapist"


class PaymentStatus(StrEnum):
    """Payment axis of a session, independent of the lifecycle status."""

    PENDING = "Pending"
    PROCESSING = "Processing"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"
    REFUNDED = "Refunded"


# A confirmed payment must never sit next to one of these.
PRE_PAYMENT_STATUSES = frozenset(
    {
        SessionStatus.REQUESTED,
        SessionStatus.PENDING_APPROVAL,
        SessionStatus.APPROVED,
        SessionStatus.PAYMENT_PENDING,
        SessionStatus.PAYMENT_SUBMITTED,
    }
)

TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.COMPLETED,
        SessionStatus.CANCELLED,
        SessionStatus.DECLINED,
        SessionStatus.NO_SHOW_CLIENT,
        SessionStatus.NO_SHOW_THERAPIST,
    }
)


@dataclass(frozen=True)
class GatewayCorrelation:
    """Identifiers of the in-flight STK push request."""

    checkout_request_id: str
    merchant_request_id: str
    requested_at: datetime


@dataclass(frozen=True)
class PaymentResult:
    """Outcome reported by the gateway for one checkout request."""

    checkout_request_id: str
    result_code: int
    result_desc: str
    transaction_id: str | None = None
    amount: Decimal | None = None
    phone_number: str | None = None
    transaction_date: datetime | None = None


@dataclass(frozen=True)
class PaymentAttempt:
    """Single entry of the append-only payment audit trail."""

    timestamp: datetime
    correlation_id: str | None
    phone_number: str | None
    outcome: str


@dataclass(frozen=True)
class VideoCall:
    """Timestamps of the live video session."""

    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_minutes: int | None = None


@dataclass(frozen=True)
class SessionRecord:
    """Represents a persisted therapy session."""

    id: UUID
    client_id: UUID
    psychologist_id: UUID
    session_type: str
    session_date: datetime
    price: Decimal
    status: SessionStatus | str
    payment_status: PaymentStatus | str
    payment_initiated_at: datetime | None = None
    gateway_correlation: GatewayCorrelation | None = None
    payment_result: PaymentResult | None = None
    payment_attempts: tuple[PaymentAttempt, ...] = field(default_factory=tuple)
    video_call: VideoCall = field(default_factory=VideoCall)
    version: int = 0

    def is_participant(self, actor_id: UUID) -> bool:
        """Return true when the actor is the client or the psychologist."""
        return actor_id in {self.client_id, self.psychologist_id}


def parse_status(raw: str) -> SessionStatus | str:
    """Parse a stored status, keeping unrecognised values as raw strings."""
    try:
        return SessionStatus(raw)
    except ValueError:
        return raw


def parse_payment_status(raw: str) -> PaymentStatus | str:
    """Parse a stored payment status, keeping unrecognised values as-is."""
    try:
        return PaymentStatus(raw)
    except ValueError:
        return raw


def invariant_violations(session: SessionRecord) -> list[tuple[str, str]]:
    """Return ``(violation_type, details)`` pairs for a session record."""
    violations: list[tuple[str, str]] = []
    if (
        session.payment_status == PaymentStatus.CONFIRMED
        and session.status in PRE_PAYMENT_STATUSES
    ):
        violations.append(
            (
                "confirmed_payment_pre_payment_status",
                f"payment is Confirmed but status is {session.status}",
            )
        )
    if (
        session.status == SessionStatus.IN_PROGRESS
        and session.payment_status != PaymentStatus.CONFIRMED
    ):
        violations.append(
            (
                "in_progress_without_payment",
                f"session is In Progress with payment {session.payment_status}",
            )
        )
    if session.payment_status == PaymentStatus.REFUNDED and session.status in {
        SessionStatus.READY,
        SessionStatus.IN_PROGRESS,
    }:
        violations.append(
            (
                "refunded_session_active",
                f"payment was refunded but status is {session.status}",
            )
        )
    return violations
