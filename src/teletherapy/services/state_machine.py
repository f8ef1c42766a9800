"""Legal session status transitions and their preconditions."""

from collections.abc import Callable
from dataclasses import dataclass

from teletherapy.domain.outcomes import ErrorCode
from teletherapy.domain.sessions import PaymentStatus, SessionRecord, SessionStatus

TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.REQUESTED: frozenset(
        {SessionStatus.PENDING_APPROVAL, SessionStatus.CANCELLED}
    ),
    SessionStatus.PENDING_APPROVAL: frozenset(
        {SessionStatus.APPROVED, SessionStatus.DECLINED, SessionStatus.CANCELLED}
    ),
    SessionStatus.APPROVED: frozenset(
        {SessionStatus.PAYMENT_SUBMITTED, SessionStatus.CANCELLED}
    ),
    SessionStatus.PAYMENT_SUBMITTED: frozenset(
        {SessionStatus.CONFIRMED, SessionStatus.CANCELLED}
    ),
    SessionStatus.CONFIRMED: frozenset(
        {SessionStatus.IN_PROGRESS, SessionStatus.CANCELLED}
    ),
    SessionStatus.IN_PROGRESS: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.CANCELLED}
    ),
}


@dataclass(frozen=True)
class TransitionCheck:
    """Verdict on a proposed status change."""

    ok: bool
    code: ErrorCode | None = None
    reason: str | None = None


def _payment_confirmed(session: SessionRecord) -> str | None:
    if session.payment_status != PaymentStatus.CONFIRMED:
        return "Payment must be confirmed before this change"
    return None


def _ready_to_start(session: SessionRecord) -> str | None:
    if session.payment_status != PaymentStatus.CONFIRMED:
        return "Payment must be confirmed before starting a session"
    if session.video_call.started_at is not None:
        return "Video call has already been started"
    return None


def _call_started(session: SessionRecord) -> str | None:
    if session.video_call.started_at is None:
        return "Cannot complete a session that was never started"
    return None


_PRECONDITIONS: dict[
    tuple[SessionStatus, SessionStatus], Callable[[SessionRecord], str | None]
] = {
    (SessionStatus.PAYMENT_SUBMITTED, SessionStatus.CONFIRMED): _payment_confirmed,
    (SessionStatus.CONFIRMED, SessionStatus.IN_PROGRESS): _ready_to_start,
    (SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED): _call_started,
}


def can_transition(current: SessionStatus | str, proposed: SessionStatus | str) -> bool:
    """Return true when ``current -> proposed`` is an edge of the lifecycle."""
    try:
        source = SessionStatus(current)
        target = SessionStatus(proposed)
    except ValueError:
        return False
    return target in TRANSITIONS.get(source, frozenset())


def validate_transition(
    session: SessionRecord, proposed: SessionStatus | str
) -> TransitionCheck:
    """Check a proposed status change against the full session record."""
    if not can_transition(session.status, proposed):
        return TransitionCheck(
            ok=False,
            code=ErrorCode.INVALID_TRANSITION,
            reason=f"Invalid status transition from {session.status} to {proposed}",
        )
    precondition = _PRECONDITIONS.get(
        (SessionStatus(session.status), SessionStatus(proposed))
    )
    reason = precondition(session) if precondition else None
    if reason:
        return TransitionCheck(
            ok=False, code=ErrorCode.PRECONDITION_FAILED, reason=reason
        )
    return TransitionCheck(ok=True)
