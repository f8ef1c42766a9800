"""M-Pesa Daraja API client adapter."""

import base64
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

import httpx

from teletherapy.domain.outcomes import GatewayError
from teletherapy.domain.payments import StkPushResponse, StkQueryResponse

_SANDBOX_URL = "https://sandbox.safaricom.co.ke"
_PRODUCTION_URL = "https://api.safaricom.co.ke"
_TOKEN_TTL = timedelta(minutes=50)
_GATEWAY_TZ = ZoneInfo("Africa/Nairobi")


class MpesaClient(Protocol):
    """Interface for STK push interactions with the payment gateway."""

    async def stk_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        transaction_desc: str,
    ) -> StkPushResponse:
        """Ask the gateway to prompt the payer's phone."""

    async def stk_query(self, checkout_request_id: str) -> StkQueryResponse:
        """Query the gateway for the status of an STK push."""


def base_url_for(environment: str) -> str:
    """Return the Daraja base URL for ``sandbox`` or ``production``."""
    return _PRODUCTION_URL if environment == "production" else _SANDBOX_URL


@dataclass
class HttpxMpesaClient(MpesaClient):
    """M-Pesa client implemented with httpx."""

    consumer_key: str
    consumer_secret: str
    business_short_code: str
    passkey: str
    callback_url: str
    base_url: str
    http_client: httpx.AsyncClient
    _token: str | None = field(default=None, init=False, repr=False)
    _token_expires_at: datetime | None = field(default=None, init=False, repr=False)

    @classmethod
    def create(  # noqa: PLR0913
        cls,
        consumer_key: str,
        consumer_secret: str,
        business_short_code: str,
        passkey: str,
        callback_url: str,
        environment: str = "sandbox",
    ) -> "HttpxMpesaClient":
        """Create an M-Pesa client with a managed httpx session."""
        return cls(
            consumer_key=consumer_key,
            consumer_secret=consumer_secret,
            business_short_code=business_short_code,
            passkey=passkey,
            callback_url=callback_url,
            base_url=base_url_for(environment),
            http_client=httpx.AsyncClient(),
        )

    async def stk_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        transaction_desc: str,
    ) -> StkPushResponse:
        """Send an STK push request."""
        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self.business_short_code,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": self.business_short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }
        data = await self._post("/mpesa/stkpush/v1/processrequest", payload)
        if str(data.get("ResponseCode")) != "0":
            raise GatewayError(
                str(data.get("ResponseDescription") or "STK push failed"),
                error_type="rejected",
            )
        return StkPushResponse(
            checkout_request_id=str(data["CheckoutRequestID"]),
            merchant_request_id=str(data["MerchantRequestID"]),
            customer_message=data.get("CustomerMessage"),
        )

    async def stk_query(self, checkout_request_id: str) -> StkQueryResponse:
        """Query the status of an STK push."""
        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self.business_short_code,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        data = await self._post("/mpesa/stkpushquery/v1/query", payload)
        result_code = data.get("ResultCode")
        return StkQueryResponse(
            checkout_request_id=str(data.get("CheckoutRequestID", checkout_request_id)),
            merchant_request_id=data.get("MerchantRequestID"),
            result_code=int(result_code) if result_code is not None else None,
            result_desc=data.get("ResultDesc"),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client session."""
        await self.http_client.aclose()

    async def _post(self, path: str, payload: dict[str, object]) -> dict:
        token = await self._access_token()
        try:
            response = await self.http_client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=30,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise GatewayError(
                "M-Pesa request timed out", error_type="timeout"
            ) from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"M-Pesa request failed: {exc}") from exc
        return response.json()

    async def _access_token(self) -> str:
        now = datetime.now(tz=UTC)
        if self._token and self._token_expires_at and now < self._token_expires_at:
            return self._token
        credentials = base64.b64encode(
            f"{self.consumer_key}:{self.consumer_secret}".encode()
        ).decode()
        try:
            response = await self.http_client.get(
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {credentials}"},
                timeout=15,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise GatewayError("M-Pesa auth timed out", error_type="timeout") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(
                f"M-Pesa authentication failed: {exc}", error_type="auth_failed"
            ) from exc
        self._token = str(response.json()["access_token"])
        self._token_expires_at = now + _TOKEN_TTL
        return self._token

    def _password(self, timestamp: str) -> str:
        raw = f"{self.business_short_code}{self.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(tz=_GATEWAY_TZ).strftime("%Y%m%d%H%M%S")
