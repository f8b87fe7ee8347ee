"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (mostly pure data containers). Stores and services do the
work; the only behavior here is JSON (de)serialization of the small value
objects that the store persists as JSON text columns.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SubscriptionTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


@dataclass
class User:
    """An identity record.

    id is an opaque uuid4 hex string assigned by the store on insert. Users are
    never physically deleted by this core; a missing row means the user was
    removed out of band and must fail authentication.
    """

    email: str
    username: str
    password_hash: str
    subscription: SubscriptionTier = SubscriptionTier.FREE
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Permission:
    """A resource pattern plus the actions it allows.

    A key's permissions are evaluated as a union -- see auth/permissions.py.
    """

    resource: str
    actions: tuple[str, ...]

    def to_dict(self) -> dict:
        return {"resource": self.resource, "actions": list(self.actions)}

    @classmethod
    def from_dict(cls, data: dict) -> Permission:
        return cls(resource=data["resource"], actions=tuple(data.get("actions", ())))


@dataclass(frozen=True)
class RateLimit:
    """Quota policy attached to an API key at creation; immutable afterwards.

    max_servers is an ownership ceiling enforced by callers, not by this core.
    """

    requests_per_hour: int
    requests_per_day: int
    max_servers: int

    def to_dict(self) -> dict:
        return {
            "requests_per_hour": self.requests_per_hour,
            "requests_per_day": self.requests_per_day,
            "max_servers": self.max_servers,
        }

    @classmethod
    def from_dict(cls, data: dict) -> RateLimit:
        return cls(
            requests_per_hour=int(data["requests_per_hour"]),
            requests_per_day=int(data["requests_per_day"]),
            max_servers=int(data["max_servers"]),
        )


@dataclass(frozen=True)
class RateLimitStatus:
    """Result of one RateLimiter.check() call. Derived, never stored."""

    remaining: int
    reset_time: datetime
    exceeded: bool
    limit: int = 0  # the binding ceiling (hourly unless the daily one is exceeded)
    used: int = 0


@dataclass
class ApiKey:
    """A long-lived credential bound to exactly one user.

    Security design:
    - key_hash is HMAC-SHA256(SECRET_KEY, raw_key). Deterministic, so the store
      can look keys up through its UNIQUE index; the unique constraint is also
      what guarantees key uniqueness under concurrent creation.
    - key_prefix (first 12 chars of the raw key) is kept for display only.
    - key holds the raw secret ONLY on the object returned by
      ApiKeyService.create(). It is never persisted and never listed again.
    """

    user_id: str
    name: str
    key_hash: str
    key_prefix: str
    permissions: list[Permission] = field(default_factory=list)
    rate_limit: RateLimit | None = None
    id: str | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    key: str | None = None


@dataclass(frozen=True)
class ApiKeyValidation:
    """Outcome of ApiKeyService.validate().

    reason is set only when is_valid is False: "not_found", "expired" or
    "owner_missing".
    """

    is_valid: bool
    key_id: str | None = None
    user_id: str | None = None
    permissions: tuple[Permission, ...] = ()
    rate_limit: RateLimit | None = None
    reason: str | None = None


@dataclass(frozen=True)
class AuthToken:
    """An issued session credential. Never persisted."""

    token: str
    expires_at: datetime
    user_id: str


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    expires_at: datetime


@dataclass(frozen=True)
class Principal:
    """The authenticated identity attached to a request.

    permissions is None for session-token principals: a logged-in user acts
    with full rights over their own resources. API-key principals carry the
    key's permission list and the policy that was charged.
    """

    user_id: str
    permissions: tuple[Permission, ...] | None = None
    key_id: str | None = None
    rate_limit: RateLimit | None = None

    def can(self, resource: str, action: str) -> bool:
        from auth.permissions import has_permission

        if self.permissions is None:
            return True
        return has_permission(self.permissions, resource, action)

    def can_grant(self, permissions) -> bool:
        """True if this principal may hand `permissions` on to a new key."""
        from auth.permissions import grants_all

        if self.permissions is None:
            return True
        return grants_all(self.permissions, permissions)
