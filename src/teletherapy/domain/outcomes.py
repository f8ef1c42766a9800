"""Typed results and internal errors shared by the session services."""

from dataclasses import dataclass
from enum import StrEnum

from teletherapy.domain.sessions import SessionRecord


class ErrorCode(StrEnum):
    """Reasons a session operation was rejected or acknowledged specially."""

    INVALID_TRANSITION = "invalid_transition"
    PRECONDITION_FAILED = "precondition_failed"
    PAYMENT_ALREADY_IN_FLIGHT = "payment_already_in_flight"
    DUPLICATE_CALLBACK = "duplicate_callback"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    GATEWAY_TIMEOUT = "gateway_timeout"
    TRANSIENT_FAILURE = "transient_failure"
    INVARIANT_VIOLATION = "invariant_violation"
    PAYMENT_CONFLICT = "payment_conflict"
    AMOUNT_MISMATCH = "amount_mismatch"
    NOT_FOUND = "not_found"
    INVALID_PHONE_NUMBER = "invalid_phone_number"
    PAYMENT_NOT_CONFIRMED = "payment_not_confirmed"
    NOT_READY = "not_ready"
    ALREADY_STARTED = "already_started"
    NEVER_STARTED = "never_started"
    NOT_AUTHORIZED = "not_authorized"


@dataclass(frozen=True)
class Outcome:
    """Result of a session operation.

    ``ok`` is true when the caller should treat the request as handled. An
    acknowledged no-op (for example a replayed gateway callback) is ``ok``
    with a ``code`` explaining why nothing changed.
    """

    ok: bool
    session: SessionRecord | None = None
    code: ErrorCode | None = None
    message: str | None = None

    @classmethod
    def success(
        cls,
        session: SessionRecord | None,
        code: ErrorCode | None = None,
        message: str | None = None,
    ) -> "Outcome":
        """Build a successful outcome."""
        return cls(ok=True, session=session, code=code, message=message)

    @classmethod
    def failure(
        cls,
        code: ErrorCode,
        message: str,
        session: SessionRecord | None = None,
    ) -> "Outcome":
        """Build a rejected outcome."""
        return cls(ok=False, session=session, code=code, message=message)


class VersionConflictError(Exception):
    """Raised by a repository when a compare-and-set write loses a race."""


class StoreUnavailableError(Exception):
    """Raised by a repository when the backing store cannot serve a request."""


class GatewayError(Exception):
    """Raised when the payment gateway cannot be reached or refuses a call."""

    def __init__(self, message: str, error_type: str = "gateway_error") -> None:
        super().__init__(message)
        self.error_type = error_type


class InvariantViolationError(Exception):
    """Raised when a candidate write would break the payment invariant."""

    def __init__(self, violations: list[tuple[str, str]]) -> None:
        super().__init__("; ".join(details for _, details in violations))
        self.violations = violations
