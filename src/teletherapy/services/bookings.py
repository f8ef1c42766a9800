"""Booking actions that move a session through approval and cancellation."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from teletherapy.domain.outcomes import ErrorCode, Outcome
from teletherapy.domain.sessions import (
    PaymentStatus,
    SessionRecord,
    SessionStatus,
)
from teletherapy.services.alerts import AlertSink, LoggingAlertSink
from teletherapy.services.sessions import (
    Decision,
    PendingWrite,
    SessionRepository,
    apply_change,
)
from teletherapy.services.state_machine import validate_transition


@dataclass
class BookingService:
    """Thin booking handler; every status change goes through the state machine."""

    repository: SessionRepository
    alerts: AlertSink = field(default_factory=LoggingAlertSink)

    def create(  # noqa: PLR0913
        self,
        client_id: UUID,
        psychologist_id: UUID,
        session_type: str,
        session_date: datetime,
        price: Decimal,
    ) -> SessionRecord:
        """Create a new session in ``Requested`` with a pending payment."""
        return self.repository.create_session(
            SessionRecord(
                id=uuid4(),
                client_id=client_id,
                psychologist_id=psychologist_id,
                session_type=session_type,
                session_date=session_date,
                price=price,
                status=SessionStatus.REQUESTED,
                payment_status=PaymentStatus.PENDING,
            )
        )

    def submit_for_approval(self, session_id: UUID) -> Outcome:
        """Send a requested session to the psychologist for approval."""
        return self._move(session_id, SessionStatus.PENDING_APPROVAL)

    def approve(self, session_id: UUID) -> Outcome:
        """Approve a session so the client can pay for it."""
        return self._move(session_id, SessionStatus.APPROVED)

    def decline(self, session_id: UUID) -> Outcome:
        """Decline a session awaiting approval."""
        return self._move(session_id, SessionStatus.DECLINED)

    def cancel(self, session_id: UUID) -> Outcome:
        """Cancel a session, even while a payment is still in flight."""
        return self._move(session_id, SessionStatus.CANCELLED)

    def _move(self, session_id: UUID, target: SessionStatus) -> Outcome:
        def decide(session: SessionRecord) -> Decision:
            check = validate_transition(session, target)
            if not check.ok:
                return Outcome.failure(
                    check.code or ErrorCode.INVALID_TRANSITION,
                    check.reason or "Transition rejected",
                    session=session,
                )
            return PendingWrite(replace(session, status=target))

        return apply_change(
            self.repository, self.alerts, session_id, decide, f"move to {target}"
        )
