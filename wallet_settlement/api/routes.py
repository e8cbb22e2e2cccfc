import logging
from typing import Any, Callable
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ..core.dependencies import get_callback_gate, get_ledger, get_settlement_service
from ..core.errors import MalformedNotificationError, UnmatchedCorrelationError
from ..models import (
    AccountCreate,
    AccountResponse,
    CallbackAck,
    PaymentRequest,
    TransactionPage,
    TransactionResponse,
)
from ..services import (
    CallbackGate,
    NotificationResult,
    SettlementNotification,
    SettlementService,
    TransactionLedger,
    parse_bulk_result,
    parse_bulk_timeout,
    parse_push_callback,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts", tags=["accounts"])

@router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: AccountCreate,
    ledger: TransactionLedger = Depends(get_ledger),
) -> AccountResponse:
    return ledger.create_account(payload)

@router.get("/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: UUID,
    ledger: TransactionLedger = Depends(get_ledger),
) -> AccountResponse:
    return ledger.get_account(account_id)

@router.post(
    "/{account_id}/deposit",
    response_model=TransactionResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def deposit(
    account_id: UUID,
    payload: PaymentRequest,
    service: SettlementService = Depends(get_settlement_service),
) -> TransactionResponse:
    return service.deposit(account_id, payload.phone_number, payload.amount)

@router.post(
    "/{account_id}/withdraw",
    response_model=TransactionResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def withdraw(
    account_id: UUID,
    payload: PaymentRequest,
    service: SettlementService = Depends(get_settlement_service),
) -> TransactionResponse:
    return service.withdraw(account_id, payload.phone_number, payload.amount)

@router.get("/{account_id}/transactions", response_model=TransactionPage)
def list_transactions(
    account_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    cursor: str | None = None,
    ledger: TransactionLedger = Depends(get_ledger),
) -> TransactionPage:
    return ledger.list_transactions(account_id, limit=limit, cursor=cursor)

transaction_router = APIRouter(prefix="/transactions", tags=["transactions"])

@transaction_router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: UUID,
    ledger: TransactionLedger = Depends(get_ledger),
) -> TransactionResponse:
    return ledger.get_transaction(transaction_id)


callback_router = APIRouter(prefix="/mpesa", tags=["callbacks"])


def _ack(result_code: int, result_desc: str, status_code: int = 200) -> JSONResponse:
    body = CallbackAck(result_code=result_code, result_desc=result_desc)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


async def _process_callback(
    request: Request,
    gate: CallbackGate,
    parse: Callable[[Any], SettlementNotification],
    handle: Callable[[SettlementNotification], NotificationResult],
) -> JSONResponse:
    decision = gate.authenticate_request(request)
    if not decision.accepted:
        return _ack(1, decision.public_reason, decision.status_code)

    try:
        notification = parse(await request.json())
    except (MalformedNotificationError, ValueError) as exc:
        logger.warning(
            "callback.malformed",
            extra={"path": request.url.path, "error": str(exc)},
        )
        return _ack(1, "Invalid payload", status.HTTP_400_BAD_REQUEST)

    try:
        await run_in_threadpool(handle, notification)
    except UnmatchedCorrelationError:
        return _ack(1, "Unknown transaction", status.HTTP_404_NOT_FOUND)

    return _ack(0, "Accepted")


@callback_router.post("/callback")
async def push_callback(
    request: Request,
    gate: CallbackGate = Depends(get_callback_gate),
    service: SettlementService = Depends(get_settlement_service),
) -> JSONResponse:
    return await _process_callback(
        request, gate, parse_push_callback, service.handle_settlement_notification
    )


@callback_router.post("/b2c/result")
async def bulk_result(
    request: Request,
    gate: CallbackGate = Depends(get_callback_gate),
    service: SettlementService = Depends(get_settlement_service),
) -> JSONResponse:
    return await _process_callback(
        request, gate, parse_bulk_result, service.handle_settlement_notification
    )


@callback_router.post("/b2c/queue")
async def bulk_timeout(
    request: Request,
    gate: CallbackGate = Depends(get_callback_gate),
    service: SettlementService = Depends(get_settlement_service),
) -> JSONResponse:
    return await _process_callback(request, gate, parse_bulk_timeout, service.handle_timeout)


__all__ = ["router", "transaction_router", "callback_router"]
