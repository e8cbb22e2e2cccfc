"""Outbound client for the M-Pesa Daraja API.

Covers the three calls the wallet needs: the client-credentials token
exchange, STK push (customer pays in) and B2C payment (business pays out).
The client holds no ledger state; callers get acknowledgements back and the
financial outcome arrives later through the callback endpoints.
"""

from __future__ import annotations

import base64
import logging
import random
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Optional

import httpx

from ..core.errors import (
    GatewayAuthError,
    GatewayRejectedError,
    GatewayUnavailableError,
    InvalidAccountReferenceError,
)


logger = logging.getLogger(__name__)

INTERNATIONAL_PREFIX = "254"
NATIONAL_TRUNK_PREFIX = "0"


@dataclass(frozen=True)
class GatewayConfig:
    """Everything the client needs to talk to the provider, fixed at construction."""

    base_url: str
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    initiator_name: str = ""
    security_credential: str = ""
    callback_base_url: str = ""
    callback_secret: str = ""
    command_id: str = "BusinessPayment"
    account_reference: str = "Wallet"
    timeout_seconds: float = 30.0
    token_ttl_seconds: int = 3600

    def callback_url(self, path: str) -> str:
        return f"{self.callback_base_url.rstrip('/')}{path}?token={self.callback_secret}"


@dataclass(frozen=True)
class PushAcknowledgement:
    conversation_id: str
    merchant_request_id: Optional[str]
    response_code: str
    description: str
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def originator_conversation_id(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class BulkAcknowledgement:
    conversation_id: str
    originator_conversation_id: str
    response_code: str
    description: str
    raw: dict[str, Any] = field(default_factory=dict)


def normalize_account_reference(account_ref: str) -> str:
    """Rewrite a Kenyan phone number into the 2547XXXXXXXX form the provider expects.

    Non-digits are dropped first, so "+254 712-345-678" and "0712 345 678"
    both normalize to "254712345678".
    """
    digits = re.sub(r"\D", "", account_ref or "")
    if digits.startswith(INTERNATIONAL_PREFIX):
        return digits
    if digits.startswith(NATIONAL_TRUNK_PREFIX):
        return f"{INTERNATIONAL_PREFIX}{digits[1:]}"
    raise InvalidAccountReferenceError(
        f'Invalid phone number format. Must start with "{NATIONAL_TRUNK_PREFIX}" '
        f'or "{INTERNATIONAL_PREFIX}".'
    )


def generate_originator_conversation_id(now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d%H%M%S%f")
    return f"TXN{stamp}{random.randint(0, 9999):04d}"


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class GatewayClient:
    TOKEN_REFRESH_MARGIN_SECONDS = 60

    def __init__(
        self,
        config: GatewayConfig,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._http = http_client or httpx.Client(timeout=config.timeout_seconds)
        self._clock = clock
        self._token_lock = threading.Lock()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def get_access_token(self) -> str:
        with self._token_lock:
            if self._token is not None and self._clock() < self._token_expires_at:
                return self._token
            token, expires_in = self._fetch_token()
            ttl = min(expires_in, self.config.token_ttl_seconds) - self.TOKEN_REFRESH_MARGIN_SECONDS
            if ttl > 0:
                self._token = token
                self._token_expires_at = self._clock() + ttl
            else:
                self._token = None
            return token

    def invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0

    def _fetch_token(self) -> tuple[str, int]:
        url = f"{self.config.base_url}/oauth/v1/generate"
        try:
            response = self._http.get(
                url,
                params={"grant_type": "client_credentials"},
                auth=(self.config.consumer_key, self.config.consumer_secret),
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "gateway.token.rejected",
                extra={"status_code": exc.response.status_code},
            )
            raise GatewayAuthError("Payment provider rejected client credentials") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("gateway.token.failed", extra={"error": str(exc)})
            raise GatewayAuthError("Could not obtain payment provider access token") from exc

        if not isinstance(body, dict):
            logger.error("gateway.token.malformed", extra={"body_type": type(body).__name__})
            raise GatewayAuthError("Payment provider returned a malformed token response")
        token = body.get("access_token")
        if not token:
            logger.error("gateway.token.missing", extra={"keys": sorted(body)})
            raise GatewayAuthError("Payment provider returned no access token")
        try:
            expires_in = int(body.get("expires_in", self.config.token_ttl_seconds))
        except (TypeError, ValueError):
            expires_in = self.config.token_ttl_seconds
        return token, expires_in

    # ------------------------------------------------------------------
    # Payment initiation
    # ------------------------------------------------------------------
    def initiate_push(self, account_ref: str, amount: int) -> PushAcknowledgement:
        phone = normalize_account_reference(account_ref)
        token = self.get_access_token()
        timestamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")

        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": build_password(self.config.shortcode, self.config.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": phone,
            "PartyB": self.config.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.config.callback_url("/mpesa/callback"),
            "AccountReference": self.config.account_reference,
            "TransactionDesc": f"Deposit to {self.config.account_reference} wallet",
        }
        logger.info("gateway.push.submitting", extra={"phone": phone, "amount": amount})

        body = self._post("/mpesa/stkpush/v1/processrequest", payload, token)
        conversation_id = body.get("CheckoutRequestID")
        if not conversation_id:
            raise GatewayRejectedError("Payment provider did not return a checkout id")

        logger.info("gateway.push.accepted", extra={"conversation_id": conversation_id})
        return PushAcknowledgement(
            conversation_id=conversation_id,
            merchant_request_id=body.get("MerchantRequestID"),
            response_code=str(body.get("ResponseCode")),
            description=body.get("ResponseDescription", ""),
            raw=body,
        )

    def initiate_bulk(self, account_ref: str, amount: int) -> BulkAcknowledgement:
        phone = normalize_account_reference(account_ref)
        originator_id = generate_originator_conversation_id()
        token = self.get_access_token()

        payload = {
            "OriginatorConversationID": originator_id,
            "InitiatorName": self.config.initiator_name,
            "SecurityCredential": self.config.security_credential,
            "CommandID": self.config.command_id,
            "Amount": amount,
            "PartyA": self.config.shortcode,
            "PartyB": phone,
            "Remarks": f"Withdrawal from {self.config.account_reference}",
            "QueueTimeOutURL": self.config.callback_url("/mpesa/b2c/queue"),
            "ResultURL": self.config.callback_url("/mpesa/b2c/result"),
            "Occasion": "Withdrawal",
        }
        logger.info(
            "gateway.bulk.submitting",
            extra={"phone": phone, "amount": amount, "originator_conversation_id": originator_id},
        )

        body = self._post("/mpesa/b2c/v3/paymentrequest", payload, token)
        conversation_id = body.get("ConversationID")
        if not conversation_id:
            raise GatewayRejectedError("Payment provider did not return a conversation id")

        logger.info(
            "gateway.bulk.accepted",
            extra={"conversation_id": conversation_id, "originator_conversation_id": originator_id},
        )
        return BulkAcknowledgement(
            conversation_id=conversation_id,
            originator_conversation_id=body.get("OriginatorConversationID") or originator_id,
            response_code=str(body.get("ResponseCode")),
            description=body.get("ResponseDescription", ""),
            raw=body,
        )

    def _post(self, path: str, payload: dict[str, Any], token: str) -> dict[str, Any]:
        url = f"{self.config.base_url}{path}"
        try:
            response = self._http.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as exc:
            logger.error("gateway.timeout", extra={"path": path})
            raise GatewayUnavailableError("Payment provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("gateway.unreachable", extra={"path": path, "error": str(exc)})
            raise GatewayUnavailableError("Payment provider unreachable") from exc

        if response.status_code == 401:
            self.invalidate_token()
            raise GatewayAuthError("Payment provider rejected the access token")
        if response.status_code >= 500:
            logger.error(
                "gateway.server_error",
                extra={"path": path, "status_code": response.status_code},
            )
            raise GatewayUnavailableError("Payment provider unavailable")

        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayUnavailableError("Payment provider returned a malformed response") from exc
        if not isinstance(body, dict):
            logger.error(
                "gateway.malformed",
                extra={"path": path, "status_code": response.status_code},
            )
            raise GatewayUnavailableError("Payment provider returned a malformed response")

        if response.status_code >= 400 or str(body.get("ResponseCode")) != "0":
            logger.warning(
                "gateway.rejected",
                extra={
                    "path": path,
                    "status_code": response.status_code,
                    "error_code": body.get("errorCode") or body.get("ResponseCode"),
                    "error_message": body.get("errorMessage") or body.get("ResponseDescription"),
                },
            )
            raise GatewayRejectedError("Payment provider declined the request")
        return body
