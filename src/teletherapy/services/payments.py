"""Payment initiation and idempotent reconciliation of gateway callbacks."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from teletherapy.adapters.mpesa_client import MpesaClient
from teletherapy.domain.outcomes import (
    ErrorCode,
    GatewayError,
    Outcome,
    StoreUnavailableError,
)
from teletherapy.domain.payments import (
    CallbackPayload,
    StkPushResponse,
    describe_result_code,
    gateway_amount,
    mask_phone_number,
    normalize_phone_number,
)
from teletherapy.domain.sessions import (
    PRE_PAYMENT_STATUSES,
    GatewayCorrelation,
    PaymentAttempt,
    PaymentResult,
    PaymentStatus,
    SessionRecord,
    SessionStatus,
)
from teletherapy.services.alerts import AlertSink, LoggingAlertSink
from teletherapy.services.audit import AuditService
from teletherapy.services.sessions import (
    Decision,
    PendingWrite,
    SessionRepository,
    apply_change,
)
from teletherapy.services.state_machine import validate_transition

logger = logging.getLogger(__name__)

_PAYABLE_STATUSES = {SessionStatus.APPROVED, SessionStatus.PAYMENT_SUBMITTED}


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class StatusSnapshot:
    """Read-only payment view of a session used for client polling."""

    session_id: UUID
    status: str
    payment_status: str
    last_result: PaymentResult | None


@dataclass
class PaymentService:
    """Drives session payment states from STK pushes and gateway callbacks."""

    repository: SessionRepository
    gateway: MpesaClient
    audit: AuditService
    alerts: AlertSink = field(default_factory=LoggingAlertSink)
    single_flight_window: timedelta = timedelta(minutes=2)
    query_after: timedelta = timedelta(seconds=30)
    clock: Callable[[], datetime] = _utcnow

    async def initiate(self, session_id: UUID, phone_number: str) -> Outcome:
        """Request an STK push for an approved session.

        The flight is reserved with a compare-and-set write before the gateway
        is called, so a session never has two prompts outstanding.
        """
        formatted_phone = normalize_phone_number(phone_number)
        if formatted_phone is None:
            return Outcome.failure(
                ErrorCode.INVALID_PHONE_NUMBER,
                "Invalid phone number. Use format: 0712345678 or 254712345678",
            )

        reserved_at = self.clock()
        before_reservation: SessionRecord | None = None

        def reserve(current: SessionRecord) -> Decision:
            nonlocal before_reservation
            rejection = self._initiate_rejection(current, reserved_at)
            if rejection is not None:
                return rejection
            before_reservation = current
            return PendingWrite(
                replace(
                    current,
                    payment_status=PaymentStatus.PROCESSING,
                    payment_initiated_at=reserved_at,
                )
            )

        reservation = apply_change(
            self.repository, self.alerts, session_id, reserve, "payment reservation"
        )
        if not reservation.ok or reservation.session is None:
            return reservation
        session = reservation.session

        try:
            push = await self.gateway.stk_push(
                phone_number=formatted_phone,
                amount=gateway_amount(session.price),
                account_reference=f"SESSION-{str(session.id)[-8:]}",
                transaction_desc=f"{session.session_type} therapy session",
            )
        except GatewayError as exc:
            logger.warning(
                "STK push failed",
                extra={
                    "session_id": str(session_id),
                    "error_type": exc.error_type,
                    "phone": mask_phone_number(formatted_phone),
                },
            )
            self._release_reservation(
                session_id, before_reservation, reserved_at, formatted_phone
            )
            return Outcome.failure(
                ErrorCode.GATEWAY_TIMEOUT,
                "Failed to initiate payment. Please try again.",
            )

        outcome = apply_change(
            self.repository,
            self.alerts,
            session_id,
            lambda current: _record_checkout(
                current, push, reserved_at, formatted_phone, self.clock()
            ),
            "payment initiation",
        )
        if outcome.ok:
            logger.info(
                "STK push initiated",
                extra={
                    "session_id": str(session_id),
                    "checkout_request_id": push.checkout_request_id,
                    "phone": mask_phone_number(formatted_phone),
                },
            )
            self.audit.record_event(
                "payment_initiated",
                {
                    "merchant_request_id": push.merchant_request_id,
                    "amount": str(session.price),
                    "phone": mask_phone_number(formatted_phone),
                },
                session_id=session_id,
                checkout_request_id=push.checkout_request_id,
            )
        else:
            self.alerts.critical(
                "STK push sent but not recorded",
                {
                    "session_id": str(session_id),
                    "checkout_request_id": push.checkout_request_id,
                    "code": outcome.code,
                },
            )
            self.audit.record_event(
                "orphaned_checkout",
                {"reason": outcome.code, "message": outcome.message},
                session_id=session_id,
                checkout_request_id=push.checkout_request_id,
            )
        return outcome

    def process_callback(self, payload: CallbackPayload) -> Outcome:
        """Apply a gateway callback exactly once in effect."""
        try:
            session = self.repository.find_by_checkout_request_id(
                payload.checkout_request_id
            )
        except StoreUnavailableError as exc:
            logger.error(
                "Session store unavailable for callback: %s",
                exc,
                extra={"checkout_request_id": payload.checkout_request_id},
            )
            self.alerts.critical(
                "Payment callback could not be applied",
                {"checkout_request_id": payload.checkout_request_id},
            )
            self._audit_callback("callback_unprocessed", payload, None)
            return Outcome.failure(
                ErrorCode.TRANSIENT_FAILURE, "Session store unavailable"
            )
        if session is None:
            logger.info(
                "Callback has no in-flight payment",
                extra={"checkout_request_id": payload.checkout_request_id},
            )
            self._audit_callback("duplicate_callback", payload, None)
            return Outcome.success(
                None,
                code=ErrorCode.DUPLICATE_CALLBACK,
                message="Callback already processed or unknown",
            )

        received_at = self.clock()
        outcome = apply_change(
            self.repository,
            self.alerts,
            session.id,
            lambda current: _decide_callback(current, payload, received_at),
            "payment callback",
        )
        self._after_callback(outcome, payload, session)
        return outcome

    def status_check(self, session_id: UUID) -> StatusSnapshot | None:
        """Return the payment view of a session without side effects."""
        session = self.repository.get_session(session_id)
        if session is None:
            return None
        return StatusSnapshot(
            session_id=session.id,
            status=str(session.status),
            payment_status=str(session.payment_status),
            last_result=session.payment_result,
        )

    async def reconcile(self, session_id: UUID) -> Outcome:
        """Ask the gateway about a payment whose callback is overdue."""
        session = self.repository.get_session(session_id)
        if session is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, "Session not found")
        correlation = session.gateway_correlation
        if (
            session.payment_status != PaymentStatus.PROCESSING
            or correlation is None
            or self.clock() - correlation.requested_at < self.query_after
        ):
            return Outcome.success(session)
        try:
            status = await self.gateway.stk_query(correlation.checkout_request_id)
        except GatewayError as exc:
            logger.warning(
                "STK status query failed",
                extra={"session_id": str(session_id), "error_type": exc.error_type},
            )
            return Outcome.failure(
                ErrorCode.GATEWAY_TIMEOUT,
                "Could not reach the payment gateway. Please try again shortly.",
                session=session,
            )
        if status.result_code is None:
            return Outcome.success(session)
        return self.process_callback(
            CallbackPayload(
                merchant_request_id=status.merchant_request_id
                or correlation.merchant_request_id,
                checkout_request_id=correlation.checkout_request_id,
                result_code=status.result_code,
                result_desc=status.result_desc or "",
            )
        )

    def _initiate_rejection(
        self, session: SessionRecord, now: datetime
    ) -> Outcome | None:
        if session.payment_status == PaymentStatus.CONFIRMED:
            return Outcome.failure(
                ErrorCode.PRECONDITION_FAILED, "Session already paid", session=session
            )
        if session.status not in _PAYABLE_STATUSES:
            return Outcome.failure(
                ErrorCode.PRECONDITION_FAILED,
                "Session must be approved by therapist before payment",
                session=session,
            )
        if (
            session.payment_status == PaymentStatus.PROCESSING
            and session.payment_initiated_at is not None
            and now - session.payment_initiated_at < self.single_flight_window
        ):
            return Outcome.failure(
                ErrorCode.PAYMENT_ALREADY_IN_FLIGHT,
                "Payment already in progress. Please check your phone or wait a "
                "moment.",
                session=session,
            )
        return None

    def _release_reservation(
        self,
        session_id: UUID,
        before: SessionRecord | None,
        reserved_at: datetime,
        phone_number: str,
    ) -> None:
        failed_at = self.clock()

        def decide(current: SessionRecord) -> Decision:
            attempt = PaymentAttempt(
                timestamp=failed_at,
                correlation_id=None,
                phone_number=phone_number,
                outcome="failed_to_initiate",
            )
            released = replace(
                current, payment_attempts=(*current.payment_attempts, attempt)
            )
            if before is not None and _holds_reservation(current, reserved_at):
                released = replace(
                    released,
                    payment_status=before.payment_status,
                    payment_initiated_at=before.payment_initiated_at,
                )
            return PendingWrite(released)

        outcome = apply_change(
            self.repository, self.alerts, session_id, decide, "reservation release"
        )
        if not outcome.ok:
            logger.error(
                "Could not release payment reservation",
                extra={"session_id": str(session_id), "code": outcome.code},
            )

    def _after_callback(
        self, outcome: Outcome, payload: CallbackPayload, session: SessionRecord
    ) -> None:
        if outcome.code == ErrorCode.DUPLICATE_CALLBACK:
            self._audit_callback("duplicate_callback", payload, session.id)
        elif outcome.code == ErrorCode.AMOUNT_MISMATCH:
            details = {
                "session_id": str(session.id),
                "checkout_request_id": payload.checkout_request_id,
                "expected_amount": gateway_amount(session.price),
                "received_amount": str(payload.amount),
            }
            self.alerts.warning("Payment amount does not match session price", details)
            self._audit_callback(
                "amount_mismatch",
                payload,
                session.id,
                expected_amount=gateway_amount(session.price),
            )
        elif outcome.code == ErrorCode.PAYMENT_CONFLICT:
            details = {
                "checkout_request_id": payload.checkout_request_id,
                "transaction_id": payload.transaction_id,
                "status": str(outcome.session.status) if outcome.session else None,
            }
            self.alerts.warning(
                "Payment received for a session no longer awaiting payment",
                {"session_id": str(session.id), **details},
            )
            self._audit_callback("refund_required", payload, session.id)
        elif outcome.ok:
            info = describe_result_code(payload.result_code)
            logger.info(
                "Payment callback applied",
                extra={
                    "session_id": str(session.id),
                    "result_type": info.type,
                    "checkout_request_id": payload.checkout_request_id,
                },
            )
            event = "payment_confirmed" if payload.succeeded else "payment_failed"
            self._audit_callback(event, payload, session.id)
        else:
            if outcome.code == ErrorCode.TRANSIENT_FAILURE:
                self.alerts.critical(
                    "Payment callback could not be applied",
                    {
                        "session_id": str(session.id),
                        "checkout_request_id": payload.checkout_request_id,
                    },
                )
            self._audit_callback("callback_unprocessed", payload, session.id)

    def _audit_callback(
        self,
        event_type: str,
        payload: CallbackPayload,
        session_id: UUID | None,
        **extra: object,
    ) -> None:
        self.audit.record_event(
            event_type,
            {
                "merchant_request_id": payload.merchant_request_id,
                "result_code": payload.result_code,
                "result_desc": payload.result_desc,
                "transaction_id": payload.transaction_id,
                "amount": str(payload.amount) if payload.amount is not None else None,
                "phone": mask_phone_number(payload.phone_number),
                **extra,
            },
            session_id=session_id,
            checkout_request_id=payload.checkout_request_id,
        )


def _holds_reservation(session: SessionRecord, reserved_at: datetime) -> bool:
    return (
        session.payment_status == PaymentStatus.PROCESSING
        and session.payment_initiated_at == reserved_at
    )


def _record_checkout(
    current: SessionRecord,
    push: StkPushResponse,
    reserved_at: datetime,
    phone_number: str,
    recorded_at: datetime,
) -> Decision:
    if not _holds_reservation(current, reserved_at):
        return Outcome.failure(
            ErrorCode.CONCURRENCY_CONFLICT,
            "Payment reservation was replaced before the checkout was recorded",
            session=current,
        )
    status = current.status
    code = message = None
    if current.status == SessionStatus.APPROVED:
        check = validate_transition(current, SessionStatus.PAYMENT_SUBMITTED)
        if not check.ok:
            return Outcome.failure(
                check.code or ErrorCode.INVALID_TRANSITION,
                check.reason or "Transition rejected",
                session=current,
            )
        status = SessionStatus.PAYMENT_SUBMITTED
    elif current.status != SessionStatus.PAYMENT_SUBMITTED:
        # The prompt is already on the phone; keep the correlation so a late
        # payment is still matched and flagged.
        code = ErrorCode.PAYMENT_CONFLICT
        message = f"Session became {current.status} while the prompt was sent"
    attempt = PaymentAttempt(
        timestamp=recorded_at,
        correlation_id=push.checkout_request_id,
        phone_number=phone_number,
        outcome="initiated",
    )
    return PendingWrite(
        replace(
            current,
            status=status,
            gateway_correlation=GatewayCorrelation(
                checkout_request_id=push.checkout_request_id,
                merchant_request_id=push.merchant_request_id,
                requested_at=reserved_at,
            ),
            payment_attempts=(*current.payment_attempts, attempt),
        ),
        code=code,
        message=message,
    )


def _decide_callback(
    current: SessionRecord, payload: CallbackPayload, received_at: datetime
) -> Decision:
    correlation = current.gateway_correlation
    if (
        correlation is None
        or correlation.checkout_request_id != payload.checkout_request_id
        or (
            current.payment_result is not None
            and current.payment_result.checkout_request_id
            == payload.checkout_request_id
        )
    ):
        return Outcome.success(
            current,
            code=ErrorCode.DUPLICATE_CALLBACK,
            message="Callback already processed",
        )

    result = PaymentResult(
        checkout_request_id=payload.checkout_request_id,
        result_code=payload.result_code,
        result_desc=payload.result_desc,
        transaction_id=payload.transaction_id,
        amount=payload.amount,
        phone_number=payload.phone_number,
        transaction_date=payload.transaction_date,
    )

    def resolved(outcome: str, **changes: object) -> SessionRecord:
        attempt = PaymentAttempt(
            timestamp=received_at,
            correlation_id=payload.checkout_request_id,
            phone_number=payload.phone_number,
            outcome=outcome,
        )
        return replace(
            current,
            payment_result=result,
            gateway_correlation=None,
            payment_attempts=(*current.payment_attempts, attempt),
            **changes,
        )

    if not payload.succeeded:
        return PendingWrite(
            resolved(
                f"failed({payload.result_desc})",
                payment_status=PaymentStatus.FAILED,
            )
        )

    expected = Decimal(gateway_amount(current.price))
    if payload.amount is not None and payload.amount != expected:
        return PendingWrite(
            resolved(
                f"amount_mismatch({payload.amount})",
                payment_status=PaymentStatus.FAILED,
            ),
            code=ErrorCode.AMOUNT_MISMATCH,
            message=f"Received {payload.amount} but the session costs {expected}",
        )

    if current.status == SessionStatus.PAYMENT_SUBMITTED:
        paid = resolved("confirmed", payment_status=PaymentStatus.CONFIRMED)
        check = validate_transition(paid, SessionStatus.CONFIRMED)
        if not check.ok:
            return Outcome.failure(
                check.code or ErrorCode.INVALID_TRANSITION,
                check.reason or "Transition rejected",
                session=current,
            )
        return PendingWrite(replace(paid, status=SessionStatus.CONFIRMED))

    if current.status not in PRE_PAYMENT_STATUSES:
        outcome = (
            "confirmed_after_cancellation"
            if current.status == SessionStatus.CANCELLED
            else "confirmed_after_status_change"
        )
        return PendingWrite(
            resolved(outcome, payment_status=PaymentStatus.CONFIRMED),
            code=ErrorCode.PAYMENT_CONFLICT,
            message="Payment received after the session left payment; "
            "flagged for refund",
        )

    # Confirming here would pair a paid result with a pre-payment status.
    return PendingWrite(
        resolved("conflict"),
        code=ErrorCode.PAYMENT_CONFLICT,
        message=f"Payment received while session is {current.status}; "
        "recorded without confirming",
    )
