"""Supabase repository for payment audit events."""

from dataclasses import dataclass
from uuid import UUID

from supabase import Client

from teletherapy.adapters.supabase_queries import run_query
from teletherapy.services.audit import AuditRepository


@dataclass
class SupabaseAuditRepository(AuditRepository):
    """Supabase-backed audit repository."""

    client: Client

    def create_event(
        self,
        session_id: UUID | None,
        event_type: str,
        checkout_request_id: str | None,
        details: dict[str, object],
    ) -> None:
        """Create an audit event row."""
        run_query(
            self.client.table("payment_audit_events").insert(
                {
                    "session_id": str(session_id) if session_id else None,
                    "event_type": event_type,
                    "checkout_request_id": checkout_request_id,
                    "details_json": details,
                }
            )
        )
