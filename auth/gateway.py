"""
auth/gateway.py -- The single authorization entry point for inbound requests.

AuthGateway.authenticate() takes the raw Authorization header value and
returns an AuthResult. It never raises and never retries: every failure is
translated into one terminal outcome, and each outcome maps to exactly one
HTTP status.

Two paths converge on the same result shape:

  Path A (session token):  Bearer <jwt>
      TokenGenerator.verify -> the referenced user must still exist -> principal

  Path B (API key):        Bearer gk_<hex>
      ApiKeyService.validate -> RateLimiter.check -> principal + permissions

Outcome              Error class          HTTP
AUTHENTICATED        -                    200
MISSING_CREDENTIAL   Unauthorized         401
INVALID_CREDENTIAL   InvalidCredential    401
EXPIRED              Expired              401
RATE_LIMIT_EXCEEDED  RateLimitExceeded    429
INTERNAL_ERROR       GatewayError         500
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from auth.api_keys import ApiKeyService
from auth.models import Principal, RateLimitStatus
from auth.rate_limiter import RateLimiter
from auth.store import CredentialStore
from auth.tokens import TokenGenerator, is_api_key
from core.errors import Expired, GatewayError, InvalidCredential, RateLimitExceeded, Unauthorized, Unavailable

logger = logging.getLogger("authgate.gateway")


class AuthOutcome(str, Enum):
    AUTHENTICATED = "authenticated"
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    EXPIRED = "expired"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INTERNAL_ERROR = "internal_error"


# Each failing outcome reports the code, message and status of one error class.
_ERRORS: dict[AuthOutcome, type[GatewayError]] = {
    AuthOutcome.MISSING_CREDENTIAL: Unauthorized,
    AuthOutcome.INVALID_CREDENTIAL: InvalidCredential,
    AuthOutcome.EXPIRED: Expired,
    AuthOutcome.RATE_LIMIT_EXCEEDED: RateLimitExceeded,
    AuthOutcome.INTERNAL_ERROR: GatewayError,
}


@dataclass(frozen=True)
class AuthResult:
    outcome: AuthOutcome
    principal: Principal | None = None
    rate_limit: RateLimitStatus | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is AuthOutcome.AUTHENTICATED

    @property
    def error(self) -> type[GatewayError] | None:
        return _ERRORS.get(self.outcome)

    @property
    def status_code(self) -> int:
        return self.error.status_code if self.error else 200

    @property
    def code(self) -> str:
        return self.error.code if self.error else self.outcome.value

    @property
    def message(self) -> str:
        return self.error.message if self.error else "Authenticated."


def extract_bearer(header_value: str | None) -> str | None:
    """Return the credential from 'Bearer <credential>', or None if absent or another scheme."""
    if not header_value:
        return None
    scheme, _, credential = header_value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    return credential or None


class AuthGateway:
    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenGenerator,
        api_keys: ApiKeyService,
        rate_limiter: RateLimiter,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.api_keys = api_keys
        self.rate_limiter = rate_limiter

    def authenticate(self, authorization: str | None) -> AuthResult:
        credential = extract_bearer(authorization)
        if credential is None:
            return AuthResult(AuthOutcome.MISSING_CREDENTIAL)
        try:
            if is_api_key(credential):
                return self._authenticate_api_key(credential)
            return self._authenticate_session(credential)
        except Unavailable:
            logger.error("Credential store unavailable during authentication")
            return AuthResult(AuthOutcome.INTERNAL_ERROR)
        except Exception:
            logger.exception("Unexpected error during authentication")
            return AuthResult(AuthOutcome.INTERNAL_ERROR)

    def _authenticate_session(self, token: str) -> AuthResult:
        try:
            claims = self.tokens.verify(token)
        except Expired:
            return AuthResult(AuthOutcome.EXPIRED)
        except InvalidCredential:
            return AuthResult(AuthOutcome.INVALID_CREDENTIAL)

        # A deleted user must not pass with a still-valid token.
        if self.store.find_user_by_id(claims.user_id) is None:
            return AuthResult(AuthOutcome.INVALID_CREDENTIAL)
        return AuthResult(AuthOutcome.AUTHENTICATED, principal=Principal(user_id=claims.user_id))

    def _authenticate_api_key(self, raw_key: str) -> AuthResult:
        validation = self.api_keys.validate(raw_key)
        if not validation.is_valid:
            if validation.reason == "expired":
                return AuthResult(AuthOutcome.EXPIRED)
            return AuthResult(AuthOutcome.INVALID_CREDENTIAL)

        status = self.rate_limiter.check(validation.key_id, validation.rate_limit)
        if status.exceeded:
            return AuthResult(AuthOutcome.RATE_LIMIT_EXCEEDED, rate_limit=status)

        principal = Principal(
            user_id=validation.user_id,
            permissions=validation.permissions,
            key_id=validation.key_id,
            rate_limit=validation.rate_limit,
        )
        return AuthResult(AuthOutcome.AUTHENTICATED, principal=principal, rate_limit=status)
