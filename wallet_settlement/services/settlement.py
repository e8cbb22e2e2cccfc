from __future__ import annotations

import dataclasses
import logging
from uuid import UUID

from ..core.errors import GatewayError, InvalidAmountError
from ..models import TransactionKind, TransactionResponse
from .gateway import GatewayClient, normalize_account_reference
from .ledger import NotificationResult, TransactionLedger
from .notifications import SettlementNotification, SettlementResult


logger = logging.getLogger(__name__)


def validate_amount(amount: object) -> int:
    # bool is an int subclass; True must not pass as 1.
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError("Amount must be a positive integer")
    return amount


class SettlementService:
    """Composes the gateway client and the ledger into the wallet use cases.

    Neither ``deposit`` nor ``withdraw`` holds an account lock across the
    provider round-trip: the withdrawal reservation is committed first, then
    the call is made.
    """

    def __init__(self, ledger: TransactionLedger, gateway: GatewayClient) -> None:
        self.ledger = ledger
        self.gateway = gateway

    def deposit(self, account_id: UUID, account_ref: str, amount: int) -> TransactionResponse:
        amount = validate_amount(amount)
        phone = normalize_account_reference(account_ref)

        transaction = self.ledger.open_transaction(
            account_id, TransactionKind.DEPOSIT, phone, amount
        )
        try:
            ack = self.gateway.initiate_push(phone, amount)
            return self.ledger.mark_submitted(transaction.id, ack)
        except Exception as exc:
            self._abandon(transaction.id, exc)
            raise

    def withdraw(self, account_id: UUID, account_ref: str, amount: int) -> TransactionResponse:
        amount = validate_amount(amount)
        phone = normalize_account_reference(account_ref)

        transaction = self.ledger.open_transaction(
            account_id, TransactionKind.WITHDRAWAL, phone, amount
        )
        # Closes the transaction itself when funds are short.
        self.ledger.reserve_withdrawal(transaction.id)
        try:
            ack = self.gateway.initiate_bulk(phone, amount)
            return self.ledger.mark_submitted(transaction.id, ack)
        except Exception as exc:
            self._abandon(transaction.id, exc)
            raise

    def _abandon(self, transaction_id: UUID, exc: Exception) -> None:
        """Fail an initiation that never reached a matchable pending state."""
        if isinstance(exc, GatewayError):
            reason = str(exc)
        else:
            logger.error(
                "transaction.initiation_error",
                extra={"transaction_id": str(transaction_id), "error": repr(exc)},
            )
            reason = "Payment initiation failed"
        self.ledger.fail_initiation(transaction_id, reason)

    def handle_settlement_notification(
        self, notification: SettlementNotification
    ) -> NotificationResult:
        return self.ledger.apply_notification(notification)

    def handle_timeout(self, notification: SettlementNotification) -> NotificationResult:
        if notification.result is not SettlementResult.TIMEOUT:
            notification = dataclasses.replace(notification, result=SettlementResult.TIMEOUT)
        logger.info(
            "notification.timeout",
            extra={"correlation_id": notification.correlation_id},
        )
        return self.ledger.apply_notification(notification)
