"""Shared test fixtures."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from teletherapy.adapters.mpesa_client import MpesaClient
from teletherapy.config import Settings
from teletherapy.containers import AppContainer
from teletherapy.domain.outcomes import GatewayError, VersionConflictError
from teletherapy.domain.payments import StkPushResponse, StkQueryResponse
from teletherapy.domain.sessions import (
    PaymentStatus,
    SessionRecord,
    SessionStatus,
)
from teletherapy.services.alerts import AlertSink
from teletherapy.services.audit import AuditRepository, AuditService
from teletherapy.services.auditor import InvariantAuditor
from teletherapy.services.bookings import BookingService
from teletherapy.services.payments import PaymentService
from teletherapy.services.sessions import SessionRepository
from teletherapy.services.video_calls import VideoCallService

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@dataclass
class InMemorySessionRepository(SessionRepository):
    """In-memory session store with compare-and-set commits."""

    sessions: dict[UUID, SessionRecord] = field(default_factory=dict)
    before_commit: Callable[[SessionRecord], None] | None = None
    commits: int = 0

    def create_session(self, session: SessionRecord) -> SessionRecord:
        self.sessions[session.id] = session
        return session

    def get_session(self, session_id: UUID) -> SessionRecord | None:
        return self.sessions.get(session_id)

    def find_by_checkout_request_id(
        self, checkout_request_id: str
    ) -> SessionRecord | None:
        for session in self.sessions.values():
            correlation = session.gateway_correlation
            if correlation and correlation.checkout_request_id == checkout_request_id:
                return session
        return None

    def commit_session(
        self, session: SessionRecord, expected_version: int
    ) -> SessionRecord:
        if self.before_commit is not None:
            hook, self.before_commit = self.before_commit, None
            hook(session)
        stored = self.sessions[session.id]
        if stored.version != expected_version:
            raise VersionConflictError(f"expected {expected_version}")
        committed = replace(session, version=expected_version + 1)
        self.sessions[session.id] = committed
        self.commits += 1
        return committed

    def list_sessions(self, offset: int, limit: int) -> list[SessionRecord]:
        return list(self.sessions.values())[offset : offset + limit]

    def force(self, session: SessionRecord) -> SessionRecord:
        """Overwrite a record as a concurrent writer would, bumping the version."""
        stored = replace(session, version=self.sessions[session.id].version + 1)
        self.sessions[session.id] = stored
        return stored


@dataclass
class FakeMpesaClient(MpesaClient):
    """Fake gateway that hands out sequential checkout ids."""

    pushes: list[dict[str, object]] = field(default_factory=list)
    queries: list[str] = field(default_factory=list)
    fail_with: GatewayError | None = None
    query_result: StkQueryResponse | None = None
    on_push: Callable[[], None] | None = None
    delay: float = 0

    async def stk_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        transaction_desc: str,
    ) -> StkPushResponse:
        if self.fail_with is not None:
            raise self.fail_with
        self.pushes.append(
            {
                "phone_number": phone_number,
                "amount": amount,
                "account_reference": account_reference,
            }
        )
        index = len(self.pushes)
        if self.on_push is not None:
            self.on_push()
        if self.delay:
            await asyncio.sleep(self.delay)
        return StkPushResponse(
            checkout_request_id=f"ws_CO_{index}",
            merchant_request_id=f"merchant-{index}",
        )

    async def stk_query(self, checkout_request_id: str) -> StkQueryResponse:
        self.queries.append(checkout_request_id)
        if self.fail_with is not None:
            raise self.fail_with
        return self.query_result or StkQueryResponse(
            checkout_request_id=checkout_request_id,
            merchant_request_id=None,
            result_code=None,
            result_desc=None,
        )


@dataclass
class InMemoryAuditRepository(AuditRepository):
    """In-memory audit repository for tests."""

    events: list[dict[str, object]] = field(default_factory=list)

    def create_event(
        self,
        session_id: UUID | None,
        event_type: str,
        checkout_request_id: str | None,
        details: dict[str, object],
    ) -> None:
        self.events.append(
            {
                "session_id": session_id,
                "event_type": event_type,
                "checkout_request_id": checkout_request_id,
                "details": details,
            }
        )

    def types(self) -> list[str]:
        return [str(event["event_type"]) for event in self.events]


@dataclass
class RecordingAlertSink(AlertSink):
    """Alert sink that keeps alerts in memory."""

    critical_alerts: list[tuple[str, dict[str, object]]] = field(default_factory=list)
    warnings: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def critical(self, title: str, details: dict[str, object]) -> None:
        self.critical_alerts.append((title, details))

    def warning(self, title: str, details: dict[str, object]) -> None:
        self.warnings.append((title, details))


@dataclass
class FakeClock:
    """Manually advanced clock."""

    now: datetime = START

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_session(
    status: SessionStatus = SessionStatus.REQUESTED,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    **changes: object,
) -> SessionRecord:
    """Build a session record with sensible booking attributes."""
    session = SessionRecord(
        id=uuid4(),
        client_id=uuid4(),
        psychologist_id=uuid4(),
        session_type="Individual",
        session_date=START + timedelta(days=3),
        price=Decimal("2500"),
        status=status,
        payment_status=payment_status,
    )
    return replace(session, **changes)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_key="service-key",
        admin_token="admin-token",
        mpesa_consumer_key="consumer-key",
        mpesa_consumer_secret="consumer-secret",
        mpesa_business_short_code="174379",
        mpesa_passkey="passkey",
        mpesa_callback_url="https://example.com/payments/callback",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_repository() -> InMemorySessionRepository:
    return InMemorySessionRepository()


@pytest.fixture
def mpesa_client() -> FakeMpesaClient:
    return FakeMpesaClient()


@pytest.fixture
def audit_repository() -> InMemoryAuditRepository:
    return InMemoryAuditRepository()


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def payment_service(
    session_repository: InMemorySessionRepository,
    mpesa_client: FakeMpesaClient,
    audit_repository: InMemoryAuditRepository,
    alerts: RecordingAlertSink,
    clock: FakeClock,
) -> PaymentService:
    return PaymentService(
        repository=session_repository,
        gateway=mpesa_client,
        audit=AuditService(audit_repository),
        alerts=alerts,
        clock=clock,
    )


@pytest.fixture
def video_call_service(
    session_repository: InMemorySessionRepository,
    alerts: RecordingAlertSink,
    clock: FakeClock,
) -> VideoCallService:
    return VideoCallService(session_repository, alerts, clock)


@pytest.fixture
def booking_service(
    session_repository: InMemorySessionRepository, alerts: RecordingAlertSink
) -> BookingService:
    return BookingService(session_repository, alerts)


@pytest.fixture
def container(
    settings: Settings,
    session_repository: InMemorySessionRepository,
    mpesa_client: FakeMpesaClient,
    alerts: RecordingAlertSink,
    payment_service: PaymentService,
    video_call_service: VideoCallService,
    booking_service: BookingService,
) -> AppContainer:
    async def close_resources() -> None:
        return None

    return AppContainer(
        settings=settings,
        mpesa_client=mpesa_client,
        alerts=alerts,
        booking_service=booking_service,
        payment_service=payment_service,
        video_call_service=video_call_service,
        invariant_auditor=InvariantAuditor(session_repository, alerts),
        close_resources=close_resources,
    )
