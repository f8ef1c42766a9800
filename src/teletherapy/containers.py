"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

from supabase import create_client

from teletherapy.adapters.mpesa_client import HttpxMpesaClient, MpesaClient
from teletherapy.adapters.supabase_audit_repository import SupabaseAuditRepository
from teletherapy.adapters.supabase_session_repository import (
    SupabaseSessionRepository,
)
from teletherapy.config import Settings
from teletherapy.services.alerts import AlertSink, LoggingAlertSink
from teletherapy.services.audit import AuditService
from teletherapy.services.auditor import InvariantAuditor
from teletherapy.services.bookings import BookingService
from teletherapy.services.payments import PaymentService
from teletherapy.services.video_calls import VideoCallService


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    mpesa_client: MpesaClient
    alerts: AlertSink
    booking_service: BookingService
    payment_service: PaymentService
    video_call_service: VideoCallService
    invariant_auditor: InvariantAuditor
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    supabase_client = create_client(
        resolved_settings.supabase_url, resolved_settings.supabase_service_key
    )
    session_repository = SupabaseSessionRepository(supabase_client)
    audit_service = AuditService(SupabaseAuditRepository(supabase_client))
    alerts = LoggingAlertSink()
    mpesa_client = HttpxMpesaClient.create(
        consumer_key=resolved_settings.mpesa_consumer_key,
        consumer_secret=resolved_settings.mpesa_consumer_secret,
        business_short_code=resolved_settings.mpesa_business_short_code,
        passkey=resolved_settings.mpesa_passkey,
        callback_url=resolved_settings.mpesa_callback_url,
        environment=resolved_settings.mpesa_environment,
    )
    payment_service = PaymentService(
        repository=session_repository,
        gateway=mpesa_client,
        audit=audit_service,
        alerts=alerts,
        single_flight_window=timedelta(
            seconds=resolved_settings.payment_single_flight_seconds
        ),
        query_after=timedelta(seconds=resolved_settings.payment_query_after_seconds),
    )

    async def close_resources() -> None:
        await mpesa_client.close()

    return AppContainer(
        settings=resolved_settings,
        mpesa_client=mpesa_client,
        alerts=alerts,
        booking_service=BookingService(session_repository, alerts),
        payment_service=payment_service,
        video_call_service=VideoCallService(session_repository, alerts),
        invariant_auditor=InvariantAuditor(session_repository, alerts),
        close_resources=close_resources,
    )
