from functools import lru_cache

from fastapi import Depends
from sqlmodel import Session

from ..services import (
    CallbackGate,
    GatewayClient,
    LedgerRepository,
    SettlementService,
    TransactionLedger,
)
from .config import get_settings
from .db import get_session
from .locks import AccountLocks


@lru_cache(maxsize=1)
def get_account_locks() -> AccountLocks:
    return AccountLocks()


@lru_cache(maxsize=1)
def get_gateway_client() -> GatewayClient:
    return GatewayClient(get_settings().gateway_config())


def get_callback_gate() -> CallbackGate:
    settings = get_settings()
    return CallbackGate(
        expected_secret=settings.mpesa_callback_secret,
        allowed_origins=settings.mpesa_allowed_origins,
        enforce_origin=settings.is_production,
    )


def get_ledger(
    session: Session = Depends(get_session),
    locks: AccountLocks = Depends(get_account_locks),
) -> TransactionLedger:
    repository = LedgerRepository(session)
    return TransactionLedger(session, locks, repository, currency=get_settings().currency)


def get_settlement_service(
    ledger: TransactionLedger = Depends(get_ledger),
    gateway: GatewayClient = Depends(get_gateway_client),
) -> SettlementService:
    return SettlementService(ledger, gateway)
