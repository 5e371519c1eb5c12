from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Protocol

import httpx
from common.utils import log_event
from pydantic import BaseModel, Field

from gatekeeper.token_cache import TokenCache

BEARER_PREFIX = "Bearer "
MISSING_HEADER_MESSAGE = "Missing authorization header"
MALFORMED_HEADER_MESSAGE = "Invalid authorization format. Use: Bearer <token>"
INVALID_KEY_MESSAGE = "Invalid or expired API key"
LOGGER = logging.getLogger("gatekeeper.auth")

AuthReason = Literal[
    "cache_hit",
    "validated",
    "missing_header",
    "malformed_header",
    "invalid_key",
    "validator_unavailable",
]


class ValidationOutcome(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    TRANSPORT_ERROR = "transport_error"


class AuthErrorBody(BaseModel):
    error: str = "Unauthorized"
    message: str
    status_code: int = Field(default=401, serialization_alias="statusCode")


@dataclass(frozen=True)
class AuthDecision:
    allowed: bool
    reason: AuthReason
    message: str | None = None

    def error_body(self) -> dict[str, Any]:
        return AuthErrorBody(message=self.message or INVALID_KEY_MESSAGE).model_dump(by_alias=True)


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX) :]
    if not token.strip():
        return None
    return token


def build_auth_subject(token: str) -> str:
    token_digest = hashlib.sha1(token.encode()).hexdigest()[:12]
    return f"token:{token_digest}"


class KeyValidator(Protocol):
    async def validate(self, authorization: str) -> ValidationOutcome: ...


class ExternalKeyValidator:
    """Asks the external ``validate-key`` service whether a bearer token is live.

    The caller's ``Authorization`` header is forwarded verbatim. A 2xx reply
    whose JSON body carries ``isSuccess: true`` is the only success; network
    failures, timeouts and headers httpx cannot encode come back as
    ``TRANSPORT_ERROR`` so the gate can fail closed while still telling the two
    apart in its logs.
    """

    def __init__(self, url: str, *, timeout_seconds: float = 5.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def validate(self, authorization: str) -> ValidationOutcome:
        try:
            response = await asyncio.wait_for(
                self._request(authorization),
                timeout=self.timeout_seconds,
            )
        except (httpx.HTTPError, TimeoutError, UnicodeError, OSError) as exc:
            LOGGER.warning(
                log_event(
                    "auth_validator_unavailable",
                    url=self.url,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            )
            return ValidationOutcome.TRANSPORT_ERROR

        if not 200 <= response.status_code < 300:
            return self._rejected(response.status_code, "non-2xx status")

        try:
            payload = response.json()
        except ValueError:
            return self._rejected(response.status_code, "non-json body")

        if isinstance(payload, dict) and payload.get("isSuccess") is True:
            return ValidationOutcome.VALID
        return self._rejected(response.status_code, "isSuccess is not true")

    def _rejected(self, status_code: int, detail: str) -> ValidationOutcome:
        LOGGER.info(
            log_event("auth_rejected", url=self.url, status_code=status_code, detail=detail)
        )
        return ValidationOutcome.INVALID

    async def _request(self, authorization: str) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.get(
                self.url,
                headers={
                    "Authorization": authorization,
                    "Content-Type": "application/json",
                },
            )


class AuthGate:
    def __init__(
        self,
        cache: TokenCache,
        validator: KeyValidator,
        *,
        protected_prefix: str = "/api/v1/",
    ) -> None:
        self.cache = cache
        self.validator = validator
        self.protected_prefix = protected_prefix

    def protects(self, path: str) -> bool:
        return path.startswith(self.protected_prefix)

    async def authorize(self, authorization: str | None) -> AuthDecision:
        if not authorization:
            return self._deny("missing_header", MISSING_HEADER_MESSAGE)

        token = parse_bearer_token(authorization)
        if token is None:
            return self._deny("malformed_header", MALFORMED_HEADER_MESSAGE)

        subject = build_auth_subject(token)
        if self.cache.get(token) is not None:
            LOGGER.debug(log_event("auth_cache_hit", auth_subject=subject))
            return AuthDecision(allowed=True, reason="cache_hit")

        outcome = await self.validator.validate(authorization)
        if outcome is ValidationOutcome.VALID:
            self.cache.set(token)
            LOGGER.info(log_event("auth_validated", auth_subject=subject))
            return AuthDecision(allowed=True, reason="validated")

        if outcome is ValidationOutcome.TRANSPORT_ERROR:
            return self._deny("validator_unavailable", INVALID_KEY_MESSAGE, auth_subject=subject)
        return self._deny("invalid_key", INVALID_KEY_MESSAGE, auth_subject=subject)

    def _deny(
        self, reason: AuthReason, message: str, *, auth_subject: str | None = None
    ) -> AuthDecision:
        LOGGER.info(log_event("auth_denied", reason=reason, auth_subject=auth_subject))
        return AuthDecision(allowed=False, reason=reason, message=message)
