import threading

import httpx
import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..core.errors import (
    GatewayAuthError,
    GatewayUnavailableError,
    InsufficientBalanceError,
    InvalidAccountReferenceError,
    InvalidAmountError,
)
from ..models import AccountResponse, TransactionKind, TransactionModel, TransactionStatus
from ..services import (
    BulkAcknowledgement,
    GatewayClient,
    GatewayConfig,
    NotificationOutcome,
    SettlementNotification,
    SettlementResult,
    SettlementService,
    TransactionLedger,
)
from .conftest import FakeGateway, failure, fund_account, success, timeout


def test_deposit_then_success_callback_credits_exact_amount(
    service: SettlementService, gateway: FakeGateway, account: AccountResponse
) -> None:
    pending = service.deposit(account.id, "0712 345 678", 100)

    assert pending.status is TransactionStatus.PENDING_GATEWAY
    assert pending.account_ref == "254712345678"
    assert gateway.push_calls == [("254712345678", 100)]
    assert service.ledger.get_account(account.id).balance == 0

    result = service.handle_settlement_notification(success(pending.correlation_id))

    assert result.outcome is NotificationOutcome.APPLIED
    assert result.transaction.status is TransactionStatus.COMPLETED
    assert service.ledger.get_account(account.id).balance == 100


def test_withdrawal_timeout_restores_balance(
    service: SettlementService, gateway: FakeGateway, account: AccountResponse
) -> None:
    fund_account(service.ledger, account.id, 50)

    pending = service.withdraw(account.id, "0712345678", 50)

    assert pending.status is TransactionStatus.PENDING_GATEWAY
    assert gateway.bulk_calls == [("254712345678", 50)]
    assert service.ledger.get_account(account.id).balance == 0

    result = service.handle_timeout(timeout(pending.correlation_id))

    assert result.transaction.status is TransactionStatus.TIMED_OUT
    assert service.ledger.get_account(account.id).balance == 50


def test_handle_timeout_forces_timeout_semantics(
    service: SettlementService, account: AccountResponse
) -> None:
    fund_account(service.ledger, account.id, 50)
    pending = service.withdraw(account.id, "0712345678", 50)

    result = service.handle_timeout(success(pending.correlation_id))

    assert result.transaction.status is TransactionStatus.TIMED_OUT
    assert service.ledger.get_account(account.id).balance == 50


@pytest.mark.parametrize("amount", [0, -5, True, 10.5, "100", None])
def test_invalid_amount_never_reaches_gateway(
    service: SettlementService, gateway: FakeGateway, account: AccountResponse, amount
) -> None:
    with pytest.raises(InvalidAmountError):
        service.deposit(account.id, "0712345678", amount)
    with pytest.raises(InvalidAmountError):
        service.withdraw(account.id, "0712345678", amount)

    assert gateway.push_calls == []
    assert gateway.bulk_calls == []


def test_invalid_phone_never_creates_transaction(
    service: SettlementService, gateway: FakeGateway, account: AccountResponse
) -> None:
    with pytest.raises(InvalidAccountReferenceError):
        service.deposit(account.id, "+1 555 0100", 100)

    assert gateway.push_calls == []
    assert service.ledger.list_transactions(account.id).items == []


@pytest.mark.parametrize(
    "error",
    [GatewayUnavailableError("Payment provider unreachable"), GatewayAuthError("no token")],
)
def test_deposit_gateway_failure_marks_failed(
    service: SettlementService, gateway: FakeGateway, account: AccountResponse, error
) -> None:
    gateway.fail_with = error

    with pytest.raises(type(error)):
        service.deposit(account.id, "0712345678", 100)

    [transaction] = service.ledger.list_transactions(account.id).items
    assert transaction.status is TransactionStatus.FAILED
    assert transaction.correlation_id is None
    assert service.ledger.get_account(account.id).balance == 0


def test_withdraw_gateway_failure_releases_reservation(
    service: SettlementService, gateway: FakeGateway, account: AccountResponse
) -> None:
    fund_account(service.ledger, account.id, 100)
    gateway.fail_with = GatewayUnavailableError("Payment provider timed out")

    with pytest.raises(GatewayUnavailableError):
        service.withdraw(account.id, "0712345678", 60)

    snapshot = service.ledger.get_account(account.id)
    assert snapshot.balance == 100
    assert snapshot.reserved == 0
    latest = service.ledger.list_transactions(account.id).items[0]
    assert latest.status is TransactionStatus.FAILED


def test_withdraw_insufficient_balance_skips_gateway(
    service: SettlementService, gateway: FakeGateway, account: AccountResponse
) -> None:
    fund_account(service.ledger, account.id, 10)

    with pytest.raises(InsufficientBalanceError):
        service.withdraw(account.id, "0712345678", 11)

    assert gateway.bulk_calls == []
    assert service.ledger.get_account(account.id).balance == 10


def test_late_success_after_failure_is_ignored(
    service: SettlementService, account: AccountResponse
) -> None:
    pending = service.deposit(account.id, "0712345678", 100)
    service.handle_settlement_notification(failure(pending.correlation_id))

    replay = service.handle_settlement_notification(success(pending.correlation_id))

    assert replay.outcome is NotificationOutcome.DUPLICATE
    assert service.ledger.get_account(account.id).balance == 0


def _concurrent_withdrawals(engine, locks, gateway, account_id, amount, attempts):
    barrier = threading.Barrier(attempts)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def attempt() -> None:
        with Session(engine) as session:
            service = SettlementService(TransactionLedger(session, locks), gateway)
            barrier.wait()
            try:
                service.withdraw(account_id, "0712345678", amount)
                outcome = "reserved"
            except InsufficientBalanceError:
                outcome = "insufficient"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt) for _ in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes


def test_concurrent_withdrawals_cannot_both_reserve(
    engine, locks, ledger: TransactionLedger, gateway: FakeGateway, account: AccountResponse
) -> None:
    fund_account(ledger, account.id, 100)

    outcomes = _concurrent_withdrawals(engine, locks, gateway, account.id, 60, attempts=2)

    assert sorted(outcomes) == ["insufficient", "reserved"]
    assert len(gateway.bulk_calls) == 1
    snapshot = ledger.get_account(account.id)
    assert snapshot.balance == 40
    assert snapshot.reserved == 60


def test_many_concurrent_withdrawals_never_overdraw(
    engine, locks, ledger: TransactionLedger, gateway: FakeGateway, account: AccountResponse
) -> None:
    fund_account(ledger, account.id, 100)

    outcomes = _concurrent_withdrawals(engine, locks, gateway, account.id, 30, attempts=8)

    assert outcomes.count("reserved") == 3
    assert outcomes.count("insufficient") == 5
    snapshot = ledger.get_account(account.id)
    assert snapshot.balance == 10
    assert snapshot.reserved == 90


def test_concurrent_duplicate_callbacks_credit_once(
    engine, locks, ledger: TransactionLedger, gateway: FakeGateway, account: AccountResponse
) -> None:
    pending = SettlementService(ledger, gateway).deposit(account.id, "0712345678", 100)
    notification = SettlementNotification(
        correlation_id=pending.correlation_id,
        result=SettlementResult.SUCCESS,
        result_code="0",
    )
    attempts = 6
    barrier = threading.Barrier(attempts)
    outcomes: list[NotificationOutcome] = []
    outcomes_lock = threading.Lock()

    def deliver() -> None:
        with Session(engine) as session:
            service = SettlementService(TransactionLedger(session, locks), gateway)
            barrier.wait()
            result = service.handle_settlement_notification(notification)
        with outcomes_lock:
            outcomes.append(result.outcome)

    threads = [threading.Thread(target=deliver) for _ in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert outcomes.count(NotificationOutcome.APPLIED) == 1
    assert outcomes.count(NotificationOutcome.DUPLICATE) == attempts - 1
    assert ledger.get_account(account.id).balance == 100
    with Session(engine) as session:
        stored = session.exec(
            select(TransactionModel).where(TransactionModel.id == pending.id)
        ).one()
        assert stored.status is TransactionStatus.COMPLETED


def provider_client(token_body, payment_body) -> GatewayClient:
    """A real GatewayClient whose provider answers with the given JSON bodies."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json=token_body)
        return httpx.Response(200, json=payment_body)

    config = GatewayConfig(
        base_url="https://sandbox.example.test",
        consumer_key="key",
        consumer_secret="secret",
        shortcode="174379",
        passkey="passkey",
        callback_base_url="https://wallet.example.test",
        callback_secret="s3cret-token",
    )
    return GatewayClient(config, http_client=httpx.Client(transport=httpx.MockTransport(handler)))


VALID_TOKEN = {"access_token": "tok-1", "expires_in": "3599"}


def test_malformed_bulk_ack_releases_reservation(
    ledger: TransactionLedger, account: AccountResponse
) -> None:
    fund_account(ledger, account.id, 100)
    service = SettlementService(
        ledger, provider_client(VALID_TOKEN, "Service is currently under maintenance")
    )

    with pytest.raises(GatewayUnavailableError):
        service.withdraw(account.id, "0712345678", 100)

    snapshot = ledger.get_account(account.id)
    assert snapshot.balance == 100
    assert snapshot.reserved == 0
    latest = ledger.list_transactions(account.id).items[0]
    assert latest.kind is TransactionKind.WITHDRAWAL
    assert latest.status is TransactionStatus.FAILED


def test_malformed_token_response_fails_withdrawal(
    ledger: TransactionLedger, account: AccountResponse
) -> None:
    fund_account(ledger, account.id, 100)
    service = SettlementService(ledger, provider_client(["nope"], {"ResponseCode": "0"}))

    with pytest.raises(GatewayAuthError):
        service.withdraw(account.id, "0712345678", 60)

    snapshot = ledger.get_account(account.id)
    assert snapshot.balance == 100
    assert snapshot.reserved == 0
    assert ledger.list_transactions(account.id).items[0].status is TransactionStatus.FAILED


def test_malformed_push_ack_fails_deposit(
    ledger: TransactionLedger, account: AccountResponse
) -> None:
    service = SettlementService(ledger, provider_client(VALID_TOKEN, ["CheckoutRequestID"]))

    with pytest.raises(GatewayUnavailableError):
        service.deposit(account.id, "0712345678", 100)

    [transaction] = ledger.list_transactions(account.id).items
    assert transaction.status is TransactionStatus.FAILED
    assert ledger.get_account(account.id).balance == 0


class ReusedIdGateway(FakeGateway):
    """Acknowledges every payout with the same provider ids."""

    def initiate_bulk(self, account_ref: str, amount: int) -> BulkAcknowledgement:
        self.bulk_calls.append((account_ref, amount))
        return BulkAcknowledgement(
            conversation_id="AG_20240101_reused",
            originator_conversation_id="TXN20240101000000000000reused",
            response_code="0",
            description="Accept the service request successfully.",
        )


def test_failed_submission_record_releases_reservation(
    ledger: TransactionLedger, account: AccountResponse
) -> None:
    fund_account(ledger, account.id, 100)
    service = SettlementService(ledger, ReusedIdGateway())
    first = service.withdraw(account.id, "0712345678", 30)

    with pytest.raises(IntegrityError):
        service.withdraw(account.id, "0712345678", 30)

    snapshot = ledger.get_account(account.id)
    assert snapshot.balance == 70
    assert snapshot.reserved == 30
    withdrawals = {
        item.id: item.status
        for item in ledger.list_transactions(account.id).items
        if item.kind is TransactionKind.WITHDRAWAL
    }
    assert withdrawals.pop(first.id) is TransactionStatus.PENDING_GATEWAY
    assert list(withdrawals.values()) == [TransactionStatus.FAILED]


def test_unexpected_gateway_error_fails_deposit(
    service: SettlementService, gateway: FakeGateway, account: AccountResponse
) -> None:
    gateway.fail_with = RuntimeError("connection pool exhausted")

    with pytest.raises(RuntimeError):
        service.deposit(account.id, "0712345678", 100)

    [transaction] = service.ledger.list_transactions(account.id).items
    assert transaction.status is TransactionStatus.FAILED
    assert transaction.result_desc == "Payment initiation failed"
