"""Authentication boundary for inbound provider callbacks.

A callback must come from one of the provider's published addresses (in
production) and carry the shared secret we embedded in the callback URL.
Rejections are returned as values, never raised, so nothing about the
failed check crosses back to the caller except a generic forbidden reply.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Request


logger = logging.getLogger(__name__)

IPV4_MAPPED_PREFIX = "::ffff:"


class GateRejection(str, Enum):
    FORBIDDEN_ORIGIN = "forbidden_origin"
    FORBIDDEN_MISSING_TOKEN = "forbidden_missing_token"
    FORBIDDEN_INVALID_TOKEN = "forbidden_invalid_token"
    MISCONFIGURED = "misconfigured"


@dataclass(frozen=True)
class GateDecision:
    origin: Optional[str]
    rejection: Optional[GateRejection] = None

    @property
    def accepted(self) -> bool:
        return self.rejection is None

    @property
    def status_code(self) -> int:
        if self.rejection is None:
            return 200
        if self.rejection is GateRejection.MISCONFIGURED:
            return 500
        return 403

    @property
    def public_reason(self) -> str:
        if self.rejection is None:
            return "Accepted"
        if self.rejection is GateRejection.MISCONFIGURED:
            return "Internal server error"
        return "Forbidden"


def resolve_origin(headers: Mapping[str, str], client_host: Optional[str]) -> Optional[str]:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    lowered = {key.lower(): value for key, value in headers.items()}
    candidate = lowered.get("x-forwarded-for") or lowered.get("x-real-ip") or client_host
    if not candidate:
        return None
    candidate = candidate.split(",")[0].strip()
    if candidate.lower().startswith(IPV4_MAPPED_PREFIX):
        candidate = candidate[len(IPV4_MAPPED_PREFIX):]
    return candidate or None


class CallbackGate:
    TOKEN_HEADERS = ("x-mpesa-token", "x-callback-token")
    TOKEN_QUERY_PARAM = "token"

    def __init__(
        self,
        expected_secret: Optional[str],
        allowed_origins: Iterable[str],
        enforce_origin: bool = True,
    ) -> None:
        self.expected_secret = expected_secret
        self.allowed_origins = frozenset(allowed_origins)
        self.enforce_origin = enforce_origin

    def authenticate(
        self,
        headers: Mapping[str, str],
        query_params: Mapping[str, str],
        client_host: Optional[str] = None,
        path: str = "",
    ) -> GateDecision:
        origin = resolve_origin(headers, client_host)
        log_extra = {"origin": origin, "path": path}

        if self.enforce_origin and origin not in self.allowed_origins:
            logger.warning("callback.rejected.origin", extra=log_extra)
            return GateDecision(origin, GateRejection.FORBIDDEN_ORIGIN)
        if not self.enforce_origin:
            logger.debug("callback.origin_check_skipped", extra=log_extra)

        if not self.expected_secret:
            logger.error("callback.misconfigured.missing_secret", extra=log_extra)
            return GateDecision(origin, GateRejection.MISCONFIGURED)

        provided = self._provided_token(headers, query_params)
        if not provided:
            logger.warning("callback.rejected.missing_token", extra=log_extra)
            return GateDecision(origin, GateRejection.FORBIDDEN_MISSING_TOKEN)

        if not self._tokens_match(provided, self.expected_secret):
            logger.warning("callback.rejected.invalid_token", extra=log_extra)
            return GateDecision(origin, GateRejection.FORBIDDEN_INVALID_TOKEN)

        logger.info("callback.authenticated", extra=log_extra)
        return GateDecision(origin)

    def authenticate_request(self, request: Request) -> GateDecision:
        return self.authenticate(
            request.headers,
            request.query_params,
            request.client.host if request.client else None,
            request.url.path,
        )

    def _provided_token(
        self,
        headers: Mapping[str, str],
        query_params: Mapping[str, str],
    ) -> Optional[str]:
        lowered = {key.lower(): value for key, value in headers.items()}
        for header in self.TOKEN_HEADERS:
            if lowered.get(header):
                return lowered[header]
        return query_params.get(self.TOKEN_QUERY_PARAM) or None

    @staticmethod
    def _tokens_match(provided: str, expected: str) -> bool:
        provided_bytes = provided.encode()
        expected_bytes = expected.encode()
        # Length is not treated as secret; equal-length inputs compare in constant time.
        if len(provided_bytes) != len(expected_bytes):
            return False
        return hmac.compare_digest(provided_bytes, expected_bytes)
