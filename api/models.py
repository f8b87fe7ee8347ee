"""
API request and response models for authgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from auth.models import ApiKey, Permission, RateLimit, SubscriptionTier, User
from auth.tokens import parse_duration

# ---------------------------------------------------------------------------
# Shared error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"


# ---------------------------------------------------------------------------
# Permission / rate-limit payloads
# ---------------------------------------------------------------------------


class PermissionModel(BaseModel):
    resource: str = Field(min_length=1, max_length=200)
    actions: list[str] = Field(min_length=1)

    def to_domain(self) -> Permission:
        return Permission(resource=self.resource, actions=tuple(self.actions))

    @classmethod
    def from_domain(cls, perm: Permission) -> "PermissionModel":
        return cls(resource=perm.resource, actions=list(perm.actions))


class RateLimitModel(BaseModel):
    requests_per_hour: int = Field(ge=1)
    requests_per_day: int = Field(ge=1)
    max_servers: int = Field(default=1, ge=0)

    def to_domain(self) -> RateLimit:
        return RateLimit(self.requests_per_hour, self.requests_per_day, self.max_servers)

    @classmethod
    def from_domain(cls, limit: RateLimit) -> "RateLimitModel":
        return cls(**limit.to_dict())


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Field rules (email format, username charset, password strength) are
    enforced by UserService so the CLI and HTTP surfaces share one policy.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255)
    username: str = Field(max_length=50)
    password: str = Field(max_length=128)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(max_length=255)
    password: str = Field(max_length=128)


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/auth/api-keys.

    Expiry is either an absolute expires_at or a relative expires_in such as
    "30d" or "12h", never both. rate_limit may only tighten the owner's tier
    default; ApiKeyService rejects anything looser.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    permissions: Optional[list[PermissionModel]] = None
    rate_limit: Optional[RateLimitModel] = None
    expires_at: Optional[datetime] = None
    expires_in: Optional[str] = Field(default=None, max_length=20)

    @field_validator("expires_in")
    @classmethod
    def check_expires_in(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_duration(v)
        return v

    @model_validator(mode="after")
    def one_expiry_only(self) -> "ApiKeyCreate":
        if self.expires_at is not None and self.expires_in is not None:
            raise ValueError("Give expires_at or expires_in, not both.")
        return self

    def expiry(self) -> Optional[datetime]:
        if self.expires_in is not None:
            return datetime.now(timezone.utc) + parse_duration(self.expires_in)
        return self.expires_at


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    username: str
    subscription: SubscriptionTier
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            subscription=user.subscription,
            created_at=user.created_at,
        )


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login."""

    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user_id: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me.

    key_id and permissions are set only when the caller authenticated with an
    API key; session-token callers act with full owner rights.
    """

    user_id: str
    email: str
    username: str
    subscription: SubscriptionTier
    key_id: Optional[str] = None
    permissions: Optional[list[PermissionModel]] = None


class ApiKeyResponse(BaseModel):
    """One row in GET /api/v1/auth/api-keys. Raw key values are never included."""

    id: str
    name: str
    key_prefix: str
    permissions: list[PermissionModel]
    rate_limit: Optional[RateLimitModel] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=key.id,
            name=key.name,
            key_prefix=key.key_prefix,
            permissions=[PermissionModel.from_domain(p) for p in key.permissions],
            rate_limit=RateLimitModel.from_domain(key.rate_limit) if key.rate_limit else None,
            created_at=key.created_at,
            expires_at=key.expires_at,
            last_used_at=key.last_used_at,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once by POST /api/v1/auth/api-keys. Includes the raw key."""

    key: str
