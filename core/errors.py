"""
core/errors.py -- Error taxonomy shared by every authgate layer.

Every failure the core can report is a GatewayError subclass carrying a stable
machine-readable code, a generic human message, and the HTTP status the
routing layer should answer with. Messages never include internal error text
(raw database errors, stack traces); that detail goes to the log only.

The API layer turns any GatewayError into the standard error envelope:
    {"error": {"code": "<code>", "message": "<message>"}}

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all authgate errors."""

    code: str = "internal_error"
    message: str = "An unexpected error occurred."
    status_code: int = 500

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# ---------------------------------------------------------------------------
# Credential failures (401)
# ---------------------------------------------------------------------------


class Unauthorized(GatewayError):
    """No credential, or one too garbled to classify."""

    code = "unauthorized"
    message = "Authentication required."
    status_code = 401


class InvalidCredential(GatewayError):
    """Signature check or credential lookup failed."""

    code = "invalid_credential"
    message = "Invalid credentials."
    status_code = 401


class InvalidSignature(InvalidCredential):
    """Session token was tampered with, malformed, or signed with another key."""

    code = "invalid_signature"


class Expired(GatewayError):
    """Token or API key is past its validity window."""

    code = "expired"
    message = "Credential has expired."
    status_code = 401


# ---------------------------------------------------------------------------
# Authorization and request failures
# ---------------------------------------------------------------------------


class Forbidden(GatewayError):
    """Authenticated, but not permitted to act on the resource."""

    code = "forbidden"
    message = "Not permitted."
    status_code = 403


class NotFound(GatewayError):
    code = "not_found"
    message = "Resource not found."
    status_code = 404


class Conflict(GatewayError):
    code = "conflict"
    message = "Resource already exists."
    status_code = 409


class InvalidRequest(GatewayError):
    code = "invalid_request"
    message = "Request validation failed."
    status_code = 400


class RateLimitExceeded(GatewayError):
    code = "rate_limited"
    message = "Too many requests."
    status_code = 429


# ---------------------------------------------------------------------------
# Infrastructure failures
# ---------------------------------------------------------------------------


class SchemaError(GatewayError):
    """A migration failed, or the ledger and the code disagree."""

    code = "schema_error"
    message = "Schema migration failed."
    status_code = 500


class MigrationNotFound(SchemaError):
    code = "migration_not_found"
    message = "Migration not found."


class Unavailable(GatewayError):
    """Persistence timed out, the pool is exhausted, or the database is down."""

    code = "unavailable"
    message = "Service temporarily unavailable."
    status_code = 503


class KeyGenerationExhausted(GatewayError):
    code = "key_generation_exhausted"
    message = "Could not generate a unique API key."
    status_code = 500
