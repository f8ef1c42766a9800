"""Domain models for mobile-money payments."""

import re
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

_PHONE_PATTERN = re.compile(r"^(254|0)[17]\d{8}$")
_PHONE_NOISE = re.compile(r"[\s\+\-\(\)]")


@dataclass(frozen=True)
class StkPushResponse:
    """Identifiers returned when the gateway accepts an STK push."""

    checkout_request_id: str
    merchant_request_id: str
    customer_message: str | None = None


@dataclass(frozen=True)
class StkQueryResponse:
    """Status of an STK push as reported by the gateway query endpoint."""

    checkout_request_id: str
    merchant_request_id: str | None
    result_code: int | None
    result_desc: str | None


@dataclass(frozen=True)
class CallbackPayload:
    """Normalised gateway callback, keyed by checkout request id."""

    merchant_request_id: str
    checkout_request_id: str
    result_code: int
    result_desc: str
    amount: Decimal | None = None
    transaction_id: str | None = None
    phone_number: str | None = None
    transaction_date: datetime | None = None

    @property
    def succeeded(self) -> bool:
        """Return true for the gateway's success code."""
        return self.result_code == 0


@dataclass(frozen=True)
class ResultCodeInfo:
    """User-facing description of a gateway result code."""

    type: str
    user_message: str
    retryable: bool


_RESULT_CODES: dict[int, ResultCodeInfo] = {
    0: ResultCodeInfo("success", "Payment completed successfully", False),
    1: ResultCodeInfo(
        "insufficient_funds",
        "Insufficient M-Pesa balance. Please top up your account and try again.",
        True,
    ),
    1001: ResultCodeInfo(
        "system_error",
        "System error occurred. Please try again in a few moments.",
        True,
    ),
    1032: ResultCodeInfo(
        "cancelled", "Payment cancelled. You can retry when ready.", True
    ),
    1036: ResultCodeInfo(
        "duplicate",
        "Duplicate transaction detected. Please check your M-Pesa messages.",
        False,
    ),
    1037: ResultCodeInfo(
        "timeout",
        "Payment request timed out. Please check your M-Pesa messages and try "
        "again if payment was not completed.",
        True,
    ),
    2001: ResultCodeInfo(
        "invalid_phone", "Invalid phone number. Please check and try again.", True
    ),
    2006: ResultCodeInfo(
        "wrong_pin",
        "Incorrect M-Pesa PIN entered. Please try again with the correct PIN.",
        True,
    ),
    2058: ResultCodeInfo(
        "account_inactive",
        "Your M-Pesa account is not active. Please contact Safaricom.",
        False,
    ),
}

_UNKNOWN_RESULT = ResultCodeInfo(
    "unknown_error",
    "Payment could not be completed. Please try again or contact support.",
    True,
)


def gateway_amount(price: Decimal) -> int:
    """Return the whole-unit amount charged through the gateway for a price."""
    return int(price.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def describe_result_code(result_code: int) -> ResultCodeInfo:
    """Map a gateway result code to a user-facing description."""
    return _RESULT_CODES.get(result_code, _UNKNOWN_RESULT)


def normalize_phone_number(raw: str) -> str | None:
    """Return the phone number in 254XXXXXXXXX form, or None when invalid."""
    cleaned = _PHONE_NOISE.sub("", raw or "")
    if not _PHONE_PATTERN.match(cleaned):
        return None
    if cleaned.startswith("0"):
        return "254" + cleaned[1:]
    return cleaned


def mask_phone_number(phone_number: str | None) -> str | None:
    """Mask all but the last four digits for logs."""
    if not phone_number:
        return phone_number
    return "*" * max(len(phone_number) - 4, 0) + phone_number[-4:]
