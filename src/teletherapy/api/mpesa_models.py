"""Pydantic models for payment, video call and booking payloads."""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from teletherapy.domain.payments import CallbackPayload


class CallbackMetadataItem(BaseModel):
    """Single ``{Name, Value}`` pair of the callback metadata."""

    name: str = Field(alias="Name")
    value: str | int | float | None = Field(default=None, alias="Value")


class CallbackMetadata(BaseModel):
    """Metadata block carried by successful callbacks."""

    items: list[CallbackMetadataItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    """The ``stkCallback`` object sent by the gateway."""

    merchant_request_id: str = Field(alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID")
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    callback_metadata: CallbackMetadata | None = Field(
        default=None, alias="CallbackMetadata"
    )

    def to_payload(self) -> CallbackPayload:
        """Flatten the gateway envelope into a domain callback payload."""
        metadata = {
            item.name: item.value
            for item in (self.callback_metadata.items if self.callback_metadata else [])
        }
        return CallbackPayload(
            merchant_request_id=self.merchant_request_id,
            checkout_request_id=self.checkout_request_id,
            result_code=self.result_code,
            result_desc=self.result_desc,
            amount=_decimal_or_none(metadata.get("Amount")),
            transaction_id=_str_or_none(metadata.get("MpesaReceiptNumber")),
            phone_number=_str_or_none(metadata.get("PhoneNumber")),
            transaction_date=_transaction_date(metadata.get("TransactionDate")),
        )


class CallbackBody(BaseModel):
    """The ``Body`` wrapper of the callback."""

    stk_callback: StkCallback | None = Field(default=None, alias="stkCallback")


class MpesaCallback(BaseModel):
    """Top-level callback envelope."""

    body: CallbackBody = Field(alias="Body")


class InitiatePaymentRequest(BaseModel):
    """Client request to start an STK push."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: UUID = Field(alias="sessionId")
    phone_number: str = Field(alias="phoneNumber")


class VideoCallRequest(BaseModel):
    """Actor asking to start or end a video call."""

    model_config = ConfigDict(populate_by_name=True)

    actor_id: UUID = Field(alias="actorId")


class CreateSessionRequest(BaseModel):
    """Booking request for a new session."""

    model_config = ConfigDict(populate_by_name=True)

    client_id: UUID = Field(alias="clientId")
    psychologist_id: UUID = Field(alias="psychologistId")
    session_type: str = Field(alias="sessionType")
    session_date: datetime = Field(alias="sessionDate")
    price: Decimal


def _decimal_or_none(value: object) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _str_or_none(value: object) -> str | None:
    return None if value is None else str(value)


def _transaction_date(value: object) -> datetime | None:
    """Parse the gateway's ``YYYYMMDDHHmmss`` timestamp."""
    if value is None:
        return None
    try:
        return datetime.strptime(str(value), "%Y%m%d%H%M%S")
    except ValueError:
        return None
