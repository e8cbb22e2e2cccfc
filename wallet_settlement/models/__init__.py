from .db import Account as AccountModel
from .db import LedgerEntry as LedgerEntryModel
from .db import Transaction as TransactionModel
from .db import TransactionKind, TransactionStatus
from .schemas import (
    AccountCreate,
    AccountResponse,
    CallbackAck,
    PaymentRequest,
    TransactionPage,
    TransactionResponse,
)

__all__ = [
    "AccountCreate",
    "AccountResponse",
    "CallbackAck",
    "PaymentRequest",
    "TransactionPage",
    "TransactionResponse",
    "AccountModel",
    "LedgerEntryModel",
    "TransactionModel",
    "TransactionKind",
    "TransactionStatus",
]
