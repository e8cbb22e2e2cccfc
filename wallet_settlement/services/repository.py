from __future__ import annotations

from typing import Optional
from uuid import UUID

from sqlmodel import Session, select

from ..models import AccountModel, LedgerEntryModel, TransactionKind, TransactionModel


class LedgerRepository:
    """Thin data access layer around the SQLModel session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Account operations -------------------------------------------------
    def add_account(self, owner_name: str, currency: str) -> AccountModel:
        account = AccountModel(owner_name=owner_name, currency=currency)
        self.session.add(account)
        self.session.flush()
        self.session.refresh(account)
        return account

    def get_account(self, account_id: UUID) -> Optional[AccountModel]:
        return self.session.get(AccountModel, account_id)

    def lock_account(self, account_id: UUID) -> Optional[AccountModel]:
        """Re-read an account row for update, bypassing the identity map."""
        stmt = (
            select(AccountModel)
            .where(AccountModel.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.exec(stmt).first()

    # Transactions -------------------------------------------------------
    def add_transaction(
        self,
        *,
        account_id: UUID,
        kind: TransactionKind,
        amount: int,
        account_ref: str,
    ) -> TransactionModel:
        transaction = TransactionModel(
            account_id=account_id,
            kind=kind,
            amount=amount,
            account_ref=account_ref,
        )
        self.session.add(transaction)
        self.session.flush()
        self.session.refresh(transaction)
        return transaction

    def get_transaction(self, transaction_id: UUID) -> Optional[TransactionModel]:
        return self.session.get(TransactionModel, transaction_id)

    def lock_transaction(self, transaction_id: UUID) -> Optional[TransactionModel]:
        stmt = (
            select(TransactionModel)
            .where(TransactionModel.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.exec(stmt).first()

    def find_by_correlation(
        self,
        correlation_id: Optional[str],
        originator_conversation_id: Optional[str] = None,
    ) -> Optional[TransactionModel]:
        """Match on the provider's conversation id, then on our originator id."""
        candidates = (
            (TransactionModel.correlation_id, correlation_id),
            (TransactionModel.originator_conversation_id, originator_conversation_id),
        )
        for column, value in candidates:
            if not value:
                continue
            stmt = (
                select(TransactionModel)
                .where(column == value)
                .execution_options(populate_existing=True)
            )
            transaction = self.session.exec(stmt).first()
            if transaction is not None:
                return transaction
        return None

    def list_transactions(self, account_id: UUID) -> list[TransactionModel]:
        stmt = (
            select(TransactionModel)
            .where(TransactionModel.account_id == account_id)
            .order_by(TransactionModel.created_at.desc(), TransactionModel.id.desc())
        )
        return list(self.session.exec(stmt))

    # Ledger entries -----------------------------------------------------
    def add_entry(
        self,
        *,
        account_id: UUID,
        transaction_id: UUID,
        amount: int,
        entry_type: str,
    ) -> LedgerEntryModel:
        entry = LedgerEntryModel(
            account_id=account_id,
            transaction_id=transaction_id,
            amount=amount,
            type=entry_type,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_entries(self, account_id: UUID) -> list[LedgerEntryModel]:
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.account_id == account_id)
            .order_by(LedgerEntryModel.ts.desc())
        )
        return list(self.session.exec(stmt))
