from __future__ import annotations
from datetime import datetime, UTC
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from sqlmodel import Field, SQLModel


class TransactionKind(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, Enum):
    CREATED = "created"
    PENDING_GATEWAY = "pending_gateway"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
            TransactionStatus.TIMED_OUT,
        )


class Account(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    owner_name: str
    currency: str = Field(default="KES", max_length=3)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    # Available balance, already net of reservations.
    balance: int = Field(default=0, ge=0)
    reserved: int = Field(default=0, ge=0)


class Transaction(SQLModel, table=True):
    __tablename__ = "settlement_transaction"

    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    account_id: UUID = Field(foreign_key="account.id", index=True)
    kind: TransactionKind
    amount: int = Field(gt=0)
    account_ref: str
    status: TransactionStatus = Field(default=TransactionStatus.CREATED, index=True)
    correlation_id: Optional[str] = Field(default=None, unique=True, index=True)
    originator_conversation_id: Optional[str] = Field(default=None, unique=True, index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), index=True)
    submitted_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None
    provider_payload: Optional[str] = None


class LedgerEntry(SQLModel, table=True):
    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    ts: datetime = Field(default_factory=lambda: datetime.now(UTC), index=True)
    account_id: UUID = Field(foreign_key="account.id", index=True)
    transaction_id: UUID = Field(foreign_key="settlement_transaction.id", index=True)
    amount: int
    type: str
