"""Gating of live video calls on the committed session state."""

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from uuid import UUID

from teletherapy.domain.outcomes import ErrorCode, Outcome
from teletherapy.domain.sessions import (
    PaymentStatus,
    SessionRecord,
    SessionStatus,
    VideoCall,
)
from teletherapy.services.alerts import AlertSink, LoggingAlertSink
from teletherapy.services.sessions import (
    Decision,
    PendingWrite,
    SessionRepository,
    apply_change,
)
from teletherapy.services.state_machine import validate_transition

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class VideoCallService:
    """Starts and ends video calls for paid sessions."""

    repository: SessionRepository
    alerts: AlertSink = field(default_factory=LoggingAlertSink)
    clock: Callable[[], datetime] = _utcnow

    def start(self, session_id: UUID, actor_id: UUID) -> Outcome:
        """Move a confirmed, paid session into ``In Progress``."""
        started_at = self.clock()

        def decide(session: SessionRecord) -> Decision:
            if not session.is_participant(actor_id):
                return Outcome.failure(
                    ErrorCode.NOT_AUTHORIZED, "Unauthorized to start this session"
                )
            # Payment is re-checked first so it wins over every other reason.
            if session.payment_status != PaymentStatus.CONFIRMED:
                return Outcome.failure(
                    ErrorCode.PAYMENT_NOT_CONFIRMED,
                    "Payment must be confirmed before starting a session",
                    session=session,
                )
            if (
                session.status == SessionStatus.IN_PROGRESS
                or session.video_call.started_at is not None
            ):
                return Outcome.failure(
                    ErrorCode.ALREADY_STARTED,
                    "Video call has already been started",
                    session=session,
                )
            check = validate_transition(session, SessionStatus.IN_PROGRESS)
            if not check.ok:
                return Outcome.failure(
                    ErrorCode.NOT_READY,
                    check.reason
                    or f"Cannot start a session in status {session.status}",
                    session=session,
                )
            video_call = replace(session.video_call, started_at=started_at)
            return PendingWrite(
                replace(
                    session, status=SessionStatus.IN_PROGRESS, video_call=video_call
                )
            )

        outcome = apply_change(
            self.repository, self.alerts, session_id, decide, "video call start"
        )
        if outcome.ok:
            logger.info(
                "Video call started",
                extra={"session_id": str(session_id), "actor_id": str(actor_id)},
            )
        return outcome

    def end(self, session_id: UUID, actor_id: UUID) -> Outcome:
        """Complete an in-progress session and record the call duration."""
        ended_at = self.clock()

        def decide(session: SessionRecord) -> Decision:
            if not session.is_participant(actor_id):
                return Outcome.failure(
                    ErrorCode.NOT_AUTHORIZED, "Unauthorized to end this session"
                )
            started_at = session.video_call.started_at
            if started_at is None:
                return Outcome.failure(
                    ErrorCode.NEVER_STARTED,
                    "Cannot complete a session that was never started",
                    session=session,
                )
            check = validate_transition(session, SessionStatus.COMPLETED)
            if not check.ok:
                return Outcome.failure(
                    ErrorCode.NOT_READY,
                    check.reason or f"Cannot end a session in status {session.status}",
                    session=session,
                )
            video_call = VideoCall(
                started_at=started_at,
                ended_at=ended_at,
                duration_minutes=_duration_minutes(started_at, ended_at),
            )
            return PendingWrite(
                replace(session, status=SessionStatus.COMPLETED, video_call=video_call)
            )

        outcome = apply_change(
            self.repository, self.alerts, session_id, decide, "video call end"
        )
        if outcome.ok and outcome.session is not None:
            logger.info(
                "Video call ended",
                extra={
                    "session_id": str(session_id),
                    "duration_minutes": outcome.session.video_call.duration_minutes,
                },
            )
        return outcome


def _duration_minutes(started_at: datetime, ended_at: datetime) -> int:
    # Half a minute rounds up.
    minutes = (ended_at - started_at).total_seconds() / 60
    return max(math.floor(minutes + 0.5), 0)
