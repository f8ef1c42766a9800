"""Session persistence interface and the guarded read-decide-write cycle."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from teletherapy.domain.outcomes import (
    ErrorCode,
    InvariantViolationError,
    Outcome,
    StoreUnavailableError,
    VersionConflictError,
)
from teletherapy.domain.sessions import SessionRecord, invariant_violations
from teletherapy.services.alerts import AlertSink

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 2


class SessionRepository(Protocol):
    """Transactional store for session records."""

    def create_session(self, session: SessionRecord) -> SessionRecord:
        """Insert a new session and return it as stored."""

    def get_session(self, session_id: UUID) -> SessionRecord | None:
        """Return a session by id, if present."""

    def find_by_checkout_request_id(
        self, checkout_request_id: str
    ) -> SessionRecord | None:
        """Return the session whose in-flight payment has this checkout id."""

    def commit_session(
        self, session: SessionRecord, expected_version: int
    ) -> SessionRecord:
        """Replace the whole record if its stored version still matches.

        Returns the stored record with its version bumped, or raises
        ``VersionConflictError`` when another writer got there first.
        """

    def list_sessions(self, offset: int, limit: int) -> list[SessionRecord]:
        """Return a page of sessions ordered by creation time."""


@dataclass(frozen=True)
class PendingWrite:
    """A candidate record plus how to report it once committed."""

    record: SessionRecord
    code: ErrorCode | None = None
    message: str | None = None


Decision = PendingWrite | Outcome


def commit_checked(
    repository: SessionRepository, candidate: SessionRecord, expected_version: int
) -> SessionRecord:
    """Commit a record only if it satisfies the payment invariant."""
    violations = invariant_violations(candidate)
    if violations:
        raise InvariantViolationError(violations)
    return repository.commit_session(candidate, expected_version)


def apply_change(
    repository: SessionRepository,
    alerts: AlertSink,
    session_id: UUID,
    decide: Callable[[SessionRecord], Decision],
    operation: str,
) -> Outcome:
    """Run read-decide-write against the committed record.

    A lost compare-and-set or an unavailable store is retried once with a
    fresh read; a second failure surfaces as a transient failure.
    """
    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        try:
            session = repository.get_session(session_id)
        except StoreUnavailableError as exc:
            _log_store_error(operation, session_id, attempt, exc)
            continue
        if session is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, "Session not found")
        decision = decide(session)
        if isinstance(decision, Outcome):
            return decision
        try:
            committed = commit_checked(repository, decision.record, session.version)
        except VersionConflictError:
            logger.warning(
                "Session changed during %s",
                operation,
                extra={"session_id": str(session_id), "attempt": attempt},
            )
            continue
        except StoreUnavailableError as exc:
            _log_store_error(operation, session_id, attempt, exc)
            continue
        except InvariantViolationError as exc:
            alerts.critical(
                "Invariant violation blocked a session write",
                {
                    "session_id": str(session_id),
                    "operation": operation,
                    "violations": [kind for kind, _ in exc.violations],
                    "details": str(exc),
                },
            )
            return Outcome.failure(
                ErrorCode.INVARIANT_VIOLATION, str(exc), session=session
            )
        return Outcome.success(committed, code=decision.code, message=decision.message)

    logger.error(
        "Giving up on %s after repeated write failures",
        operation,
        extra={"session_id": str(session_id)},
    )
    return Outcome.failure(
        ErrorCode.TRANSIENT_FAILURE,
        "The session could not be updated. Please try again.",
    )


def _log_store_error(
    operation: str, session_id: UUID, attempt: int, exc: StoreUnavailableError
) -> None:
    logger.warning(
        "Session store unavailable during %s: %s",
        operation,
        exc,
        extra={"session_id": str(session_id), "attempt": attempt},
    )
