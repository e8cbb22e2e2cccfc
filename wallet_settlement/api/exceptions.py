from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    AccountNotFoundError,
    GatewayAuthError,
    GatewayError,
    GatewayUnavailableError,
    InsufficientBalanceError,
    InvalidTransitionError,
    TransactionNotFoundError,
)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AccountNotFoundError)
    async def account_not_found_handler(
        request: Request, exc: AccountNotFoundError
    ) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(TransactionNotFoundError)
    async def transaction_not_found_handler(
        request: Request, exc: TransactionNotFoundError
    ) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InsufficientBalanceError)
    async def insufficient_balance_handler(
        request: Request, exc: InsufficientBalanceError
    ) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(
        request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        # Provider detail stays in the logs; callers get a stable message.
        if isinstance(exc, GatewayUnavailableError):
            return JSONResponse(
                status_code=503, content={"detail": "Payment provider unavailable"}
            )
        if isinstance(exc, GatewayAuthError):
            return JSONResponse(
                status_code=502, content={"detail": "Payment provider authentication failed"}
            )
        return JSONResponse(
            status_code=502, content={"detail": "Payment provider declined the request"}
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})
