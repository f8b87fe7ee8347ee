"""
auth/tokens.py -- Session tokens, password hashing, and API key utilities.

Security design decisions:
  JWT: python-jose with HS256. TokenGenerator is constructed once at startup
       with the secret from Settings and never mutated, so verify() is a pure
       function of its input and can be called from any number of threads
       without locks. Failures raise typed errors instead of returning None
       because the gateway must tell "tampered" (InvalidSignature) apart from
       "authentic but stale" (Expired).

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in UserService.login() so response time
       does not reveal whether an email is registered.

  API keys: secrets.token_hex(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw_key) so lookup is a single indexed equality
       and a stolen database does not yield usable keys. bcrypt's intentional
       slowness is unnecessary for high-entropy secrets.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import AuthToken, TokenClaims
from core.errors import Expired, InvalidSignature

logger = logging.getLogger("authgate.auth")

_ALGORITHM = "HS256"

API_KEY_PREFIX = "gk_"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password length well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Timing equalization dummy hash. Computed once at module load so the first
# login attempt is not measurably slower than subsequent ones.
DUMMY_HASH: str = hash_password("authgate_timing_dummy")


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r"^(\d+)([smhdwy])$")
_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
    "y": 365 * 86400,
}


def parse_duration(value: str) -> timedelta:
    """Parse a compact duration such as '90s', '15m', '24h', '7d', '2w', '1y'.

    Raises ValueError on anything else.
    """
    match = _DURATION_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid duration format: {value!r}")
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _UNIT_SECONDS[unit])


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


class TokenGenerator:
    """Issues and verifies signed, time-bound session tokens.

    Stateless: no storage, no network. The secret is fixed at construction.
    """

    def __init__(
        self,
        secret: str,
        default_ttl: timedelta = timedelta(hours=24),
        leeway_seconds: int = 0,
        algorithm: str = _ALGORITHM,
    ) -> None:
        if not secret:
            raise ValueError("TokenGenerator requires a non-empty secret.")
        self._secret = secret
        self._algorithm = algorithm
        self.default_ttl = default_ttl
        self.leeway_seconds = leeway_seconds

    def issue(self, user_id: str, ttl: timedelta | None = None) -> AuthToken:
        """Sign a token whose payload carries user_id and expiry.

        exp is encoded as whole seconds, so expires_at is truncated to the
        second to match what verify() will report.
        """
        now = datetime.now(timezone.utc).replace(microsecond=0)
        expires_at = now + (ttl if ttl is not None else self.default_ttl)
        payload = {
            "sub": user_id,
            "user_id": user_id,
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        return AuthToken(token=token, expires_at=expires_at, user_id=user_id)

    def verify(self, token: str) -> TokenClaims:
        """Validate signature and expiry; return the claims.

        python-jose checks the signature before any claim, so an expired token
        only reaches ExpiredSignatureError once it is proven authentic.

        Raises:
            InvalidSignature: tampered, malformed, wrong key, or missing user_id.
            Expired: authentic, but now > exp (beyond the configured leeway).
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require_exp": True, "leeway": self.leeway_seconds},
            )
        except ExpiredSignatureError as exc:
            raise Expired("Session token has expired.") from exc
        except JWTError as exc:
            raise InvalidSignature() from exc

        user_id = payload.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise InvalidSignature()
        return TokenClaims(
            user_id=user_id,
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )


# ---------------------------------------------------------------------------
# API key generation and hashing
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    """Generate a new API key in the format: gk_<64 hex chars>."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


def is_api_key(credential: str) -> bool:
    return credential.startswith(API_KEY_PREFIX)


def hash_api_key(secret: str, raw_key: str) -> str:
    """Return HMAC-SHA256(secret, raw_key) as a hex string.

    Deterministic, so the digest can be looked up through a UNIQUE index.
    """
    return hmac.new(secret.encode(), raw_key.encode(), hashlib.sha256).hexdigest()
