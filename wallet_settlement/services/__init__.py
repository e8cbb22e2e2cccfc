from .callback_gate import CallbackGate, GateDecision, GateRejection
from .gateway import (
    BulkAcknowledgement,
    GatewayClient,
    GatewayConfig,
    PushAcknowledgement,
    normalize_account_reference,
)
from .ledger import NotificationOutcome, NotificationResult, TransactionLedger
from .notifications import (
    SettlementNotification,
    SettlementResult,
    parse_bulk_result,
    parse_bulk_timeout,
    parse_push_callback,
)
from .repository import LedgerRepository
from .settlement import SettlementService

__all__ = [
    "BulkAcknowledgement",
    "CallbackGate",
    "GateDecision",
    "GateRejection",
    "GatewayClient",
    "GatewayConfig",
    "LedgerRepository",
    "NotificationOutcome",
    "NotificationResult",
    "PushAcknowledgement",
    "SettlementNotification",
    "SettlementResult",
    "SettlementService",
    "TransactionLedger",
    "normalize_account_reference",
    "parse_bulk_result",
    "parse_bulk_timeout",
    "parse_push_callback",
]
