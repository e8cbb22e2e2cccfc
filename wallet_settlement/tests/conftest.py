import itertools
from uuid import UUID

import pytest
from sqlmodel import Session, SQLModel

from ..core.db import create_engine_for_url
from ..core.locks import AccountLocks
from ..models import AccountCreate, AccountResponse, TransactionKind
from ..services import (
    BulkAcknowledgement,
    PushAcknowledgement,
    SettlementNotification,
    SettlementResult,
    SettlementService,
    TransactionLedger,
)


class FakeGateway:
    """Stands in for GatewayClient; records calls and hands out unique ids."""

    def __init__(self) -> None:
        self.push_calls: list[tuple[str, int]] = []
        self.bulk_calls: list[tuple[str, int]] = []
        self.fail_with: Exception | None = None
        self._ids = itertools.count(1)

    def initiate_push(self, account_ref: str, amount: int) -> PushAcknowledgement:
        self.push_calls.append((account_ref, amount))
        if self.fail_with is not None:
            raise self.fail_with
        n = next(self._ids)
        return PushAcknowledgement(
            conversation_id=f"ws_CO_{n:06d}",
            merchant_request_id=f"29115-{n}",
            response_code="0",
            description="Success. Request accepted for processing",
            raw={"CheckoutRequestID": f"ws_CO_{n:06d}", "ResponseCode": "0"},
        )

    def initiate_bulk(self, account_ref: str, amount: int) -> BulkAcknowledgement:
        self.bulk_calls.append((account_ref, amount))
        if self.fail_with is not None:
            raise self.fail_with
        n = next(self._ids)
        return BulkAcknowledgement(
            conversation_id=f"AG_20240101_{n:06d}",
            originator_conversation_id=f"TXN2024010100000000000{n:04d}",
            response_code="0",
            description="Accept the service request successfully.",
            raw={"ConversationID": f"AG_20240101_{n:06d}", "ResponseCode": "0"},
        )


def success(correlation_id: str, receipt: str | None = None) -> SettlementNotification:
    return SettlementNotification(
        correlation_id=correlation_id,
        result=SettlementResult.SUCCESS,
        result_code="0",
        result_desc="The service request is processed successfully.",
        receipt_number=receipt,
    )


def failure(correlation_id: str) -> SettlementNotification:
    return SettlementNotification(
        correlation_id=correlation_id,
        result=SettlementResult.FAILURE,
        result_code="1032",
        result_desc="Request cancelled by user",
    )


def timeout(correlation_id: str) -> SettlementNotification:
    return SettlementNotification(
        correlation_id=correlation_id,
        result=SettlementResult.TIMEOUT,
        result_desc="Request queue timeout",
    )


def fund_account(ledger: TransactionLedger, account_id: UUID, amount: int) -> None:
    transaction = ledger.open_transaction(
        account_id, TransactionKind.DEPOSIT, "254700000000", amount
    )
    correlation_id = f"ws_CO_fund_{transaction.id.hex}"
    ledger.mark_submitted(
        transaction.id,
        PushAcknowledgement(
            conversation_id=correlation_id,
            merchant_request_id=None,
            response_code="0",
            description="Success",
        ),
    )
    ledger.apply_notification(success(correlation_id))


@pytest.fixture
def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'test.db'}")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def locks() -> AccountLocks:
    return AccountLocks()


@pytest.fixture
def ledger(session, locks) -> TransactionLedger:
    return TransactionLedger(session, locks)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def service(ledger, gateway) -> SettlementService:
    return SettlementService(ledger, gateway)


@pytest.fixture
def account(ledger) -> AccountResponse:
    return ledger.create_account(AccountCreate(owner_name="Wanjiku"))
