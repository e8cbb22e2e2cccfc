"""Transaction ledger: the settlement state machine and every balance mutation.

Transactions move ``created -> pending_gateway -> completed | failed | timed_out``.
Each transition that can touch a balance runs with the owning account held
in ``AccountLocks`` and its rows re-read ``FOR UPDATE``, so the status check
and the arithmetic happen in one critical section.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from sqlmodel import Session

from ..core.errors import (
    AccountNotFoundError,
    InsufficientBalanceError,
    InvalidTransitionError,
    TransactionNotFoundError,
    UnmatchedCorrelationError,
)
from ..core.locks import AccountLocks
from ..models import (
    AccountCreate,
    AccountModel,
    AccountResponse,
    TransactionKind,
    TransactionModel,
    TransactionPage,
    TransactionResponse,
    TransactionStatus,
)
from .gateway import BulkAcknowledgement, PushAcknowledgement
from .notifications import SettlementNotification, SettlementResult
from .repository import LedgerRepository


logger = logging.getLogger(__name__)

_TERMINAL_STATUS = {
    SettlementResult.SUCCESS: TransactionStatus.COMPLETED,
    SettlementResult.FAILURE: TransactionStatus.FAILED,
    SettlementResult.TIMEOUT: TransactionStatus.TIMED_OUT,
}


class NotificationOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class NotificationResult:
    transaction: TransactionResponse
    outcome: NotificationOutcome


class TransactionLedger:
    def __init__(
        self,
        session: Session,
        locks: AccountLocks,
        repository: Optional[LedgerRepository] = None,
        currency: str = "KES",
    ) -> None:
        self.session = session
        self.locks = locks
        self.repository = repository or LedgerRepository(session)
        self.currency = currency

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    @staticmethod
    def _serialize(payload: Any) -> str:
        return json.dumps(payload, default=str, sort_keys=True)

    def _account_to_response(self, account: AccountModel) -> AccountResponse:
        return AccountResponse(
            id=account.id,
            owner_name=account.owner_name,
            currency=account.currency,
            created_at=account.created_at,
            balance=account.balance,
            reserved=account.reserved,
        )

    def _transaction_to_response(self, transaction: TransactionModel) -> TransactionResponse:
        return TransactionResponse.model_validate(transaction)

    def _get_account(self, account_id: UUID) -> AccountModel:
        account = self.repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def _get_transaction(self, transaction_id: UUID) -> TransactionModel:
        transaction = self.repository.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    @contextmanager
    def _serialized(
        self, transaction_id: UUID
    ) -> Iterator[tuple[TransactionModel, AccountModel]]:
        """Hold the owning account and yield freshly read rows; commit on exit."""
        account_id = self._get_transaction(transaction_id).account_id
        with self.locks.hold(account_id):
            try:
                transaction = self.repository.lock_transaction(transaction_id)
                account = self.repository.lock_account(account_id)
                if transaction is None:
                    raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
                if account is None:
                    raise AccountNotFoundError(f"Account {account_id} not found")
                yield transaction, account
                self.session.commit()
            except BaseException:
                self.session.rollback()
                raise

    def _release_reservation(
        self, transaction: TransactionModel, account: AccountModel
    ) -> None:
        account.reserved -= transaction.amount
        account.balance += transaction.amount
        self.repository.add_entry(
            account_id=account.id,
            transaction_id=transaction.id,
            amount=transaction.amount,
            entry_type="RELEASE",
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def create_account(self, payload: AccountCreate) -> AccountResponse:
        account = self.repository.add_account(payload.owner_name, self.currency)
        self.session.commit()
        logger.info(
            "account.created",
            extra={"account_id": str(account.id), "owner_name": account.owner_name},
        )
        return self._account_to_response(account)

    def get_account(self, account_id: UUID) -> AccountResponse:
        account = self._get_account(account_id)
        self.session.refresh(account)
        return self._account_to_response(account)

    # ------------------------------------------------------------------
    # Initiation side
    # ------------------------------------------------------------------
    def open_transaction(
        self,
        account_id: UUID,
        kind: TransactionKind,
        account_ref: str,
        amount: int,
    ) -> TransactionResponse:
        self._get_account(account_id)
        transaction = self.repository.add_transaction(
            account_id=account_id,
            kind=kind,
            amount=amount,
            account_ref=account_ref,
        )
        self.session.commit()
        logger.info(
            "transaction.created",
            extra={
                "transaction_id": str(transaction.id),
                "account_id": str(account_id),
                "kind": kind.value,
                "amount": amount,
            },
        )
        return self._transaction_to_response(transaction)

    def reserve_withdrawal(self, transaction_id: UUID) -> TransactionResponse:
        """Debit the amount up front so concurrent withdrawals cannot overdraw.

        On insufficient balance the transaction is closed as failed and
        ``InsufficientBalanceError`` is raised.
        """
        insufficient = False
        with self._serialized(transaction_id) as (transaction, account):
            if transaction.kind is not TransactionKind.WITHDRAWAL:
                raise InvalidTransitionError("Only withdrawals hold a reservation")
            if transaction.status is not TransactionStatus.CREATED:
                raise InvalidTransitionError(
                    f"Cannot reserve funds for a transaction in status {transaction.status.value}"
                )

            if account.balance < transaction.amount:
                transaction.status = TransactionStatus.FAILED
                transaction.result_desc = "Insufficient balance"
                transaction.resolved_at = self._now()
                insufficient = True
            else:
                account.balance -= transaction.amount
                account.reserved += transaction.amount
                transaction.status = TransactionStatus.PENDING_GATEWAY
                self.repository.add_entry(
                    account_id=account.id,
                    transaction_id=transaction.id,
                    amount=-transaction.amount,
                    entry_type="RESERVE",
                )

        if insufficient:
            logger.info(
                "withdrawal.insufficient_balance",
                extra={"transaction_id": str(transaction_id)},
            )
            raise InsufficientBalanceError("Insufficient balance for withdrawal")

        logger.info(
            "withdrawal.reserved",
            extra={"transaction_id": str(transaction_id), "balance": account.balance},
        )
        return self._transaction_to_response(transaction)

    def mark_submitted(
        self,
        transaction_id: UUID,
        ack: Union[PushAcknowledgement, BulkAcknowledgement],
    ) -> TransactionResponse:
        with self._serialized(transaction_id) as (transaction, _account):
            if transaction.kind is TransactionKind.DEPOSIT:
                expected = TransactionStatus.CREATED
            else:
                expected = TransactionStatus.PENDING_GATEWAY
            if transaction.status is not expected or transaction.correlation_id is not None:
                raise InvalidTransitionError(
                    f"Cannot submit a transaction in status {transaction.status.value}"
                )

            transaction.status = TransactionStatus.PENDING_GATEWAY
            transaction.correlation_id = ack.conversation_id
            transaction.originator_conversation_id = ack.originator_conversation_id
            transaction.submitted_at = self._now()
            transaction.result_code = ack.response_code
            transaction.result_desc = ack.description
            transaction.provider_payload = self._serialize(ack.raw)

        logger.info(
            "transaction.submitted",
            extra={
                "transaction_id": str(transaction_id),
                "correlation_id": ack.conversation_id,
            },
        )
        return self._transaction_to_response(transaction)

    def fail_initiation(self, transaction_id: UUID, reason: str) -> TransactionResponse:
        with self._serialized(transaction_id) as (transaction, account):
            if transaction.status.is_terminal:
                raise InvalidTransitionError(
                    f"Transaction already resolved as {transaction.status.value}"
                )
            if (
                transaction.kind is TransactionKind.WITHDRAWAL
                and transaction.status is TransactionStatus.PENDING_GATEWAY
            ):
                self._release_reservation(transaction, account)
            transaction.status = TransactionStatus.FAILED
            transaction.result_desc = reason
            transaction.resolved_at = self._now()

        logger.warning(
            "transaction.initiation_failed",
            extra={"transaction_id": str(transaction_id), "reason": reason},
        )
        return self._transaction_to_response(transaction)

    # ------------------------------------------------------------------
    # Settlement side
    # ------------------------------------------------------------------
    def apply_notification(self, notification: SettlementNotification) -> NotificationResult:
        match = self.repository.find_by_correlation(
            notification.correlation_id,
            notification.originator_conversation_id,
        )
        if match is None:
            logger.warning(
                "notification.unmatched",
                extra={
                    "correlation_id": notification.correlation_id,
                    "originator_conversation_id": notification.originator_conversation_id,
                },
            )
            raise UnmatchedCorrelationError(
                f"No transaction for correlation id {notification.correlation_id}"
            )

        outcome = NotificationOutcome.APPLIED
        with self._serialized(match.id) as (transaction, account):
            if transaction.status.is_terminal:
                outcome = NotificationOutcome.DUPLICATE
            elif transaction.status is not TransactionStatus.PENDING_GATEWAY:
                raise UnmatchedCorrelationError(
                    f"Transaction {transaction.id} has not been submitted"
                )
            else:
                self._settle(transaction, account, notification)

        if outcome is NotificationOutcome.DUPLICATE:
            logger.info(
                "notification.duplicate",
                extra={
                    "transaction_id": str(transaction.id),
                    "status": transaction.status.value,
                    "result": notification.result.value,
                },
            )
        else:
            logger.info(
                "transaction.resolved",
                extra={
                    "transaction_id": str(transaction.id),
                    "status": transaction.status.value,
                    "balance": account.balance,
                },
            )
        return NotificationResult(self._transaction_to_response(transaction), outcome)

    def _settle(
        self,
        transaction: TransactionModel,
        account: AccountModel,
        notification: SettlementNotification,
    ) -> None:
        status = _TERMINAL_STATUS[notification.result]
        if transaction.kind is TransactionKind.DEPOSIT:
            if status is TransactionStatus.COMPLETED:
                account.balance += transaction.amount
                self.repository.add_entry(
                    account_id=account.id,
                    transaction_id=transaction.id,
                    amount=transaction.amount,
                    entry_type="CREDIT",
                )
        elif status is TransactionStatus.COMPLETED:
            # Already debited at reservation time; only the hold goes away.
            account.reserved -= transaction.amount
        else:
            self._release_reservation(transaction, account)

        transaction.status = status
        transaction.resolved_at = self._now()
        transaction.result_code = notification.result_code
        transaction.result_desc = notification.result_desc
        transaction.receipt_number = notification.receipt_number or transaction.receipt_number
        transaction.provider_payload = self._serialize(notification.payload)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    def get_transaction(self, transaction_id: UUID) -> TransactionResponse:
        return self._transaction_to_response(self._get_transaction(transaction_id))

    def list_transactions(
        self,
        account_id: UUID,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> TransactionPage:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._get_account(account_id)

        transactions = self.repository.list_transactions(account_id)

        start_index = 0
        if cursor:
            try:
                cursor_ts = datetime.fromisoformat(cursor)
            except ValueError as exc:
                raise ValueError("Invalid cursor") from exc
            for idx, transaction in enumerate(transactions):
                if transaction.created_at.isoformat() == cursor_ts.isoformat():
                    start_index = idx + 1
                    break
            else:
                raise ValueError("Invalid cursor")

        page = transactions[start_index : start_index + limit]
        next_cursor = None
        if page and start_index + limit < len(transactions):
            next_cursor = page[-1].created_at.isoformat()

        return TransactionPage(
            items=[self._transaction_to_response(transaction) for transaction in page],
            next_cursor=next_cursor,
        )
