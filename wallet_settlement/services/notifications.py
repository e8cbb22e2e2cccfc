"""Parsing of the provider's callback bodies into SettlementNotification values."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import MalformedNotificationError


SUCCESS_RESULT_CODE = 0


class SettlementResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class SettlementNotification:
    correlation_id: Optional[str]
    result: SettlementResult
    originator_conversation_id: Optional[str] = None
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


class _ProviderModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _MetadataItem(_ProviderModel):
    name: str = Field(..., alias="Name")
    value: Any = Field(default=None, alias="Value")


class _CallbackMetadata(_ProviderModel):
    items: list[_MetadataItem] = Field(default_factory=list, alias="Item")


class _StkCallback(_ProviderModel):
    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., min_length=1, alias="CheckoutRequestID")
    result_code: int = Field(..., alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    metadata: Optional[_CallbackMetadata] = Field(default=None, alias="CallbackMetadata")


class _StkBody(_ProviderModel):
    stk_callback: _StkCallback = Field(..., alias="stkCallback")


class _StkEnvelope(_ProviderModel):
    body: _StkBody = Field(..., alias="Body")


class _ResultParameter(_ProviderModel):
    key: str = Field(..., alias="Key")
    value: Any = Field(default=None, alias="Value")


class _ResultParameters(_ProviderModel):
    items: list[_ResultParameter] = Field(default_factory=list, alias="ResultParameter")


class _B2CResult(_ProviderModel):
    result_type: Optional[int] = Field(default=None, alias="ResultType")
    result_code: Optional[int] = Field(default=None, alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    originator_conversation_id: Optional[str] = Field(default=None, alias="OriginatorConversationID")
    conversation_id: Optional[str] = Field(default=None, alias="ConversationID")
    transaction_id: Optional[str] = Field(default=None, alias="TransactionID")
    parameters: Optional[_ResultParameters] = Field(default=None, alias="ResultParameters")


class _B2CEnvelope(_ProviderModel):
    result: _B2CResult = Field(..., alias="Result")


def parse_push_callback(body: Any) -> SettlementNotification:
    try:
        callback = _StkEnvelope.model_validate(body).body.stk_callback
    except PydanticValidationError as exc:
        raise MalformedNotificationError("STK callback is missing required fields") from exc

    receipt = None
    if callback.metadata is not None:
        for item in callback.metadata.items:
            if item.name == "MpesaReceiptNumber" and item.value is not None:
                receipt = str(item.value)

    return SettlementNotification(
        correlation_id=callback.checkout_request_id,
        result=(
            SettlementResult.SUCCESS
            if callback.result_code == SUCCESS_RESULT_CODE
            else SettlementResult.FAILURE
        ),
        result_code=str(callback.result_code),
        result_desc=callback.result_desc,
        receipt_number=receipt,
        payload=body,
    )


def _parse_b2c(body: Any) -> _B2CResult:
    if isinstance(body, dict) and "Result" not in body:
        # Some timeout deliveries arrive without the Result envelope.
        body = {"Result": body}
    try:
        result = _B2CEnvelope.model_validate(body).result
    except PydanticValidationError as exc:
        raise MalformedNotificationError("B2C notification is missing required fields") from exc
    if not result.conversation_id and not result.originator_conversation_id:
        raise MalformedNotificationError("B2C notification carries no conversation id")
    return result


def parse_bulk_result(body: Any) -> SettlementNotification:
    result = _parse_b2c(body)
    if result.result_code is None:
        raise MalformedNotificationError("B2C result is missing ResultCode")

    return SettlementNotification(
        correlation_id=result.conversation_id,
        originator_conversation_id=result.originator_conversation_id,
        result=(
            SettlementResult.SUCCESS
            if result.result_code == SUCCESS_RESULT_CODE
            else SettlementResult.FAILURE
        ),
        result_code=str(result.result_code),
        result_desc=result.result_desc,
        receipt_number=result.transaction_id,
        payload=body,
    )


def parse_bulk_timeout(body: Any) -> SettlementNotification:
    result = _parse_b2c(body)
    return SettlementNotification(
        correlation_id=result.conversation_id,
        originator_conversation_id=result.originator_conversation_id,
        result=SettlementResult.TIMEOUT,
        result_code=None if result.result_code is None else str(result.result_code),
        result_desc=result.result_desc or "Request queue timeout",
        payload=body,
    )
