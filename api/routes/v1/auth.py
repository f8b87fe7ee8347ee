"""
api/routes/v1/auth.py -- Account and API key REST endpoints.

Routes:
  POST   /api/v1/auth/register          -- create an account (public)
  POST   /api/v1/auth/login             -- password login; returns a session JWT (public)
  GET    /api/v1/auth/me                -- current principal (requires auth)
  POST   /api/v1/auth/api-keys          -- create API key (requires auth + write)
  GET    /api/v1/auth/api-keys          -- list caller's API keys (requires auth + read)
  DELETE /api/v1/auth/api-keys/{id}     -- revoke key (requires auth + write, ownership checked)

Security:
  POST /login and POST /register are rate-limited per IP (Settings.login_rate_limit).
  UserService.login() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on login responses.
  IDOR guard: DELETE /api-keys/{id} passes the caller's user_id to
  ApiKeyService.revoke(), which refuses keys owned by anyone else.
  Delegation guard: a caller authenticated with an API key can only mint keys
  whose permissions its own key already grants. With no permissions in the
  body, the new key inherits the caller's set instead of the owner defaults.
  Rate limits are capped by the owner's tier inside ApiKeyService.create().

Route handlers are plain `def` (not async) because every service call is a
blocking DB round trip; FastAPI runs them in its worker thread pool.
GatewayError subclasses raised by the services propagate to the handler in
api/main.py, which renders the standard error envelope.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import (
    ApiKeyCreate,
    ApiKeyCreatedResponse,
    ApiKeyResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    PermissionModel,
    RegisterRequest,
    UserResponse,
)
from auth.dependencies import get_current_user, get_principal, require_permission
from auth.models import Principal, User
from auth.services import AuthServices
from core.errors import Forbidden

router = APIRouter()


def _services(request: Request) -> AuthServices:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an account on the free tier."""
    user = _services(request).users.register(body.email, body.username, body.password)
    return UserResponse.from_domain(user)


@limiter.limit(login_limit)  # brute-force mitigation
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return a bearer session token.

    Wrong email and wrong password produce the same InvalidCredential so the
    response does not reveal which emails are registered.
    """
    token = _services(request).users.login(body.email, body.password)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token.token,
            expires_at=token.expires_at,
            user_id=token.user_id,
        ).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(
    principal: Principal = Depends(get_principal),
    current_user: User = Depends(get_current_user),
) -> MeResponse:
    """Return identity information for the authenticated caller."""
    permissions = None
    if principal.permissions is not None:
        permissions = [PermissionModel.from_domain(p) for p in principal.permissions]
    return MeResponse(
        user_id=current_user.id,
        email=current_user.email,
        username=current_user.username,
        subscription=current_user.subscription,
        key_id=principal.key_id,
        permissions=permissions,
    )


# ---------------------------------------------------------------------------
# API key management
# ---------------------------------------------------------------------------


@router.post("/auth/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    body: ApiKeyCreate,
    principal: Principal = Depends(require_permission("write")),
) -> ApiKeyCreatedResponse:
    """Generate a new API key. The raw key is shown ONCE and never stored."""
    if body.permissions:
        permissions = [p.to_domain() for p in body.permissions]
    elif principal.permissions is not None:
        permissions = list(principal.permissions)
    else:
        permissions = None

    if permissions is not None and not principal.can_grant(permissions):
        raise Forbidden("An API key cannot grant permissions it does not hold.")

    created = _services(request).api_keys.create(
        principal.user_id,
        body.name,
        permissions=permissions,
        rate_limit=body.rate_limit.to_domain() if body.rate_limit else None,
        expires_at=body.expiry(),
    )
    return ApiKeyCreatedResponse(
        **ApiKeyResponse.from_domain(created).model_dump(),
        key=created.key,
    )


@router.get("/auth/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(
    request: Request,
    principal: Principal = Depends(require_permission("read")),
) -> list[ApiKeyResponse]:
    """List the caller's API keys, newest first. Raw key values are never returned."""
    return [ApiKeyResponse.from_domain(k) for k in _services(request).api_keys.list(principal.user_id)]


@router.delete("/auth/api-keys/{key_id}", status_code=204)
def revoke_api_key(
    request: Request,
    key_id: str,
    principal: Principal = Depends(require_permission("write")),
) -> Response:
    """Revoke an API key. Ownership is verified by ApiKeyService [IDOR guard]."""
    services = _services(request)
    services.api_keys.revoke(key_id, principal.user_id)
    services.rate_limiter.reset(key_id)
    return Response(status_code=204)
