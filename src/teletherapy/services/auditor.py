"""Out-of-band sweep for sessions that break the payment invariant."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from teletherapy.domain.payments import gateway_amount
from teletherapy.domain.sessions import (
    PaymentStatus,
    SessionRecord,
    invariant_violations,
)
from teletherapy.services.alerts import AlertSink, LoggingAlertSink
from teletherapy.services.sessions import SessionRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Violation:
    """A persisted session found in an impossible state."""

    session_id: UUID
    violation_type: str
    details: str

    def to_dict(self) -> dict[str, str]:
        """Serialize for API responses and alerts."""
        return {
            "sessionId": str(self.session_id),
            "violationType": self.violation_type,
            "details": self.details,
        }


@dataclass
class InvariantAuditor:
    """Reports invariant violations; never repairs them."""

    repository: SessionRepository
    alerts: AlertSink = field(default_factory=LoggingAlertSink)
    page_size: int = 500

    def scan(self) -> list[Violation]:
        """Re-read every session and return the violations found.

        Besides the per-record invariant, confirmed payments are checked
        against the session price and the gateway result code, and a
        transaction id recorded on more than one session is reported for
        each of them.
        """
        violations: list[Violation] = []
        transactions: dict[str, list[UUID]] = defaultdict(list)
        scanned = 0
        offset = 0
        while True:
            page = self.repository.list_sessions(offset=offset, limit=self.page_size)
            for session in page:
                violations.extend(
                    Violation(session.id, kind, details)
                    for kind, details in invariant_violations(session)
                )
                violations.extend(_payment_result_violations(session))
                result = session.payment_result
                if result is not None and result.transaction_id:
                    transactions[result.transaction_id].append(session.id)
            scanned += len(page)
            if len(page) < self.page_size:
                break
            offset += self.page_size

        for transaction_id, session_ids in transactions.items():
            if len(session_ids) > 1:
                violations.extend(
                    Violation(
                        session_id,
                        "duplicate_transaction_id",
                        f"transaction {transaction_id} is recorded on "
                        f"{len(session_ids)} sessions",
                    )
                    for session_id in session_ids
                )

        logger.info(
            "Invariant scan finished",
            extra={"scanned": scanned, "violations": len(violations)},
        )
        if violations:
            self.alerts.critical(
                "Session invariant violations detected",
                {"violations": [violation.to_dict() for violation in violations]},
            )
        return violations


def _payment_result_violations(session: SessionRecord) -> list[Violation]:
    result = session.payment_result
    if session.payment_status != PaymentStatus.CONFIRMED or result is None:
        return []
    violations = []
    expected = Decimal(gateway_amount(session.price))
    if result.amount is not None and result.amount != expected:
        violations.append(
            Violation(
                session.id,
                "amount_mismatch",
                f"paid {result.amount} but the session costs {expected}",
            )
        )
    if result.result_code != 0:
        violations.append(
            Violation(
                session.id,
                "result_code_mismatch",
                f"payment is Confirmed but result code is {result.result_code}",
            )
        )
    return violations
