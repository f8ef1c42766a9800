"""Payment audit logging service."""

import logging
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from teletherapy.domain.outcomes import StoreUnavailableError

logger = logging.getLogger(__name__)


class AuditRepository(Protocol):
    """Persistence interface for payment audit events."""

    def create_event(
        self,
        session_id: UUID | None,
        event_type: str,
        checkout_request_id: str | None,
        details: dict[str, object],
    ) -> None:
        """Create an audit event row."""


@dataclass
class AuditService:
    """Service for recording payment audit events."""

    repository: AuditRepository

    def record_event(
        self,
        event_type: str,
        details: dict[str, object],
        session_id: UUID | None = None,
        checkout_request_id: str | None = None,
    ) -> None:
        """Persist an audit event; store outages are logged, not raised."""
        try:
            self.repository.create_event(
                session_id=session_id,
                event_type=event_type,
                checkout_request_id=checkout_request_id,
                details=details,
            )
        except StoreUnavailableError:
            logger.exception(
                "Failed to record audit event",
                extra={"event_type": event_type, "session_id": session_id},
            )
