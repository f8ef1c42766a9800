"""FastAPI application factory."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from teletherapy.api.admin import router as admin_router
from teletherapy.api.mpesa_models import (
    CreateSessionRequest,
    InitiatePaymentRequest,
    MpesaCallback,
    VideoCallRequest,
)
from teletherapy.app_logging import configure_logging
from teletherapy.containers import AppContainer
from teletherapy.domain.outcomes import ErrorCode, Outcome, StoreUnavailableError
from teletherapy.domain.payments import describe_result_code
from teletherapy.domain.sessions import PaymentResult, SessionRecord
from teletherapy.services.auditor import InvariantAuditor

_ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}

_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.NOT_AUTHORIZED: 403,
    ErrorCode.PAYMENT_ALREADY_IN_FLIGHT: 409,
    ErrorCode.ALREADY_STARTED: 409,
    ErrorCode.CONCURRENCY_CONFLICT: 409,
    ErrorCode.GATEWAY_TIMEOUT: 502,
    ErrorCode.TRANSIENT_FAILURE: 503,
    ErrorCode.INVARIANT_VIOLATION: 500,
}


def create_app(container: AppContainer) -> FastAPI:  # noqa: PLR0915
    """Create a FastAPI app configured with dependencies."""
    configure_logging()
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        interval = app.state.container.settings.audit_interval_seconds
        audit_task = None
        if interval > 0:
            audit_task = asyncio.create_task(
                _run_scheduled_audit(app.state.container.invariant_auditor, interval)
            )
        yield
        if audit_task is not None:
            audit_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await audit_task
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    app.include_router(admin_router)

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable(
        request: Request, exc: StoreUnavailableError
    ) -> JSONResponse:
        logger.error(
            "Session store unavailable: %s", exc, extra={"path": request.url.path}
        )
        return JSONResponse(
            status_code=503,
            content={
                "code": ErrorCode.TRANSIENT_FAILURE,
                "message": "Service temporarily unavailable. Please try again.",
            },
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    @app.post("/sessions", status_code=201)
    async def create_session(
        body: CreateSessionRequest, request: Request
    ) -> dict[str, object]:
        """Book a new session."""
        state_container: AppContainer = request.app.state.container
        session = state_container.booking_service.create(
            client_id=body.client_id,
            psychologist_id=body.psychologist_id,
            session_type=body.session_type,
            session_date=body.session_date,
            price=body.price,
        )
        return _serialize_session(session)

    @app.post("/sessions/{session_id}/submit")
    async def submit_session(session_id: UUID, request: Request):
        """Send a requested session for psychologist approval."""
        state_container: AppContainer = request.app.state.container
        outcome = state_container.booking_service.submit_for_approval(session_id)
        return _outcome_response(outcome)

    @app.post("/sessions/{session_id}/approve")
    async def approve_session(session_id: UUID, request: Request):
        """Approve a session so the client can pay."""
        state_container: AppContainer = request.app.state.container
        return _outcome_response(state_container.booking_service.approve(session_id))

    @app.post("/sessions/{session_id}/decline")
    async def decline_session(session_id: UUID, request: Request):
        """Decline a session awaiting approval."""
        state_container: AppContainer = request.app.state.container
        return _outcome_response(state_container.booking_service.decline(session_id))

    @app.post("/sessions/{session_id}/cancel")
    async def cancel_session(session_id: UUID, request: Request):
        """Cancel a session."""
        state_container: AppContainer = request.app.state.container
        return _outcome_response(state_container.booking_service.cancel(session_id))

    @app.post("/sessions/{session_id}/video/start")
    async def start_video_call(
        session_id: UUID, body: VideoCallRequest, request: Request
    ):
        """Start the video call of a paid session."""
        state_container: AppContainer = request.app.state.container
        outcome = state_container.video_call_service.start(session_id, body.actor_id)
        return _outcome_response(outcome)

    @app.post("/sessions/{session_id}/video/end")
    async def end_video_call(
        session_id: UUID, body: VideoCallRequest, request: Request
    ):
        """End the video call and complete the session."""
        state_container: AppContainer = request.app.state.container
        outcome = state_container.video_call_service.end(session_id, body.actor_id)
        return _outcome_response(outcome)

    @app.post("/payments/initiate")
    async def initiate_payment(body: InitiatePaymentRequest, request: Request):
        """Send an STK push to the client's phone."""
        state_container: AppContainer = request.app.state.container
        outcome = await state_container.payment_service.initiate(
            body.session_id, body.phone_number
        )
        if not outcome.ok:
            return _error_response(outcome)
        correlation = outcome.session.gateway_correlation if outcome.session else None
        return {
            "success": True,
            "msg": "Payment prompt sent to your phone. Please enter your M-Pesa PIN.",
            "checkoutRequestID": correlation and correlation.checkout_request_id,
            "merchantRequestID": correlation and correlation.merchant_request_id,
        }

    @app.post("/payments/callback")
    async def payment_callback(
        callback: MpesaCallback, request: Request
    ) -> dict[str, object]:
        """Handle gateway callbacks; business outcomes are always acknowledged."""
        state_container: AppContainer = request.app.state.container
        stk_callback = callback.body.stk_callback
        if stk_callback is None:
            logger.error("Invalid callback structure")
            return {"ResultCode": 1, "ResultDesc": "Invalid callback structure"}
        payload = stk_callback.to_payload()
        try:
            outcome = state_container.payment_service.process_callback(payload)
        except Exception:
            logger.exception(
                "Callback processing error",
                extra={"checkout_request_id": payload.checkout_request_id},
            )
            state_container.alerts.critical(
                "Payment callback raised an error",
                {"checkout_request_id": payload.checkout_request_id},
            )
            return _ACCEPTED
        if not outcome.ok:
            logger.warning(
                "Callback acknowledged without being applied",
                extra={
                    "checkout_request_id": payload.checkout_request_id,
                    "code": outcome.code,
                },
            )
        return _ACCEPTED

    @app.get("/payments/status/{session_id}")
    async def payment_status(session_id: UUID, request: Request):
        """Return the payment view of a session for client polling."""
        state_container: AppContainer = request.app.state.container
        snapshot = state_container.payment_service.status_check(session_id)
        if snapshot is None:
            return JSONResponse(
                status_code=404,
                content={"code": ErrorCode.NOT_FOUND, "message": "Session not found"},
            )
        return {
            "sessionId": str(snapshot.session_id),
            "status": snapshot.status,
            "paymentStatus": snapshot.payment_status,
            "lastResult": _serialize_result(snapshot.last_result),
        }

    @app.post("/payments/{session_id}/reconcile")
    async def reconcile_payment(session_id: UUID, request: Request):
        """Query the gateway for a payment whose callback is overdue."""
        state_container: AppContainer = request.app.state.container
        outcome = await state_container.payment_service.reconcile(session_id)
        return _outcome_response(outcome)

    return app


async def _run_scheduled_audit(auditor: InvariantAuditor, interval: int) -> None:
    logger = logging.getLogger(__name__)
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(auditor.scan)
        except Exception:
            logger.exception("Scheduled invariant scan failed")


def _outcome_response(outcome: Outcome):
    if not outcome.ok:
        return _error_response(outcome)
    body: dict[str, object] = {
        "session": _serialize_session(outcome.session) if outcome.session else None
    }
    if outcome.code is not None:
        body["code"] = outcome.code
        body["message"] = outcome.message
    return body


def _error_response(outcome: Outcome) -> JSONResponse:
    code = outcome.code or ErrorCode.PRECONDITION_FAILED
    return JSONResponse(
        status_code=_HTTP_STATUS.get(code, 400),
        content={"code": code, "message": outcome.message},
    )


def _serialize_session(session: SessionRecord) -> dict[str, object]:
    video_call = session.video_call
    return {
        "id": str(session.id),
        "clientId": str(session.client_id),
        "psychologistId": str(session.psychologist_id),
        "sessionType": session.session_type,
        "sessionDate": session.session_date.isoformat(),
        "price": str(session.price),
        "status": str(session.status),
        "paymentStatus": str(session.payment_status),
        "paymentInitiatedAt": session.payment_initiated_at.isoformat()
        if session.payment_initiated_at
        else None,
        "videoCall": {
            "startedAt": video_call.started_at.isoformat()
            if video_call.started_at
            else None,
            "endedAt": video_call.ended_at.isoformat() if video_call.ended_at else None,
            "durationMinutes": video_call.duration_minutes,
        },
        "version": session.version,
    }


def _serialize_result(result: PaymentResult | None) -> dict[str, object] | None:
    if result is None:
        return None
    return {
        "transactionID": result.transaction_id,
        "amount": str(result.amount) if result.amount is not None else None,
        "phoneNumber": result.phone_number,
        "resultCode": result.result_code,
        "resultDesc": result.result_desc,
        "message": describe_result_code(result.result_code).user_message,
    }
