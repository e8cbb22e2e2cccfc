from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .db import TransactionKind, TransactionStatus


class AccountCreate(BaseModel):
    owner_name: str = Field(..., min_length=1, description="Name of the account holder")


class AccountResponse(BaseModel):
    id: UUID
    owner_name: str
    currency: str
    created_at: datetime
    balance: int = Field(..., ge=0, description="Available balance in minor units")
    reserved: int = Field(..., ge=0, description="Amount held by unresolved withdrawals")


class PaymentRequest(BaseModel):
    phone_number: str = Field(..., min_length=1, description="Counter-party M-Pesa number")
    # Strict so that 10.5 or "10" is rejected rather than coerced.
    amount: int = Field(..., ge=1, strict=True, description="Amount in minor units (must be >= 1)")


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    kind: TransactionKind
    amount: int
    account_ref: str
    status: TransactionStatus
    correlation_id: Optional[str] = None
    created_at: datetime
    submitted_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None


class TransactionPage(BaseModel):
    items: list[TransactionResponse]
    next_cursor: Optional[str] = None


class CallbackAck(BaseModel):
    """Body returned to the provider for every callback, accepted or not."""

    model_config = ConfigDict(populate_by_name=True)

    result_code: int = Field(..., alias="ResultCode")
    result_desc: str = Field(..., alias="ResultDesc")
