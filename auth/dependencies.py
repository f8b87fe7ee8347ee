"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Every protected route goes through AuthGateway.authenticate(), which accepts
one credential form: Authorization: Bearer <credential>. The credential is
either a session JWT (from POST /auth/login) or an API key (gk_...); the
gateway tells them apart by prefix.

get_principal() maps a non-AUTHENTICATED AuthResult onto an HTTPException
carrying the same {"code", "message"} detail shape the exception handlers in
api/main.py render. Rate-limited results also carry Retry-After and
X-RateLimit-* headers.

get_current_user() resolves the principal to its User row.
require_permission() wraps get_principal() and raises HTTP 403 when the
principal's permission set does not grant the action.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

from fastapi import Depends, HTTPException, Request

from auth.gateway import AuthOutcome, AuthResult
from auth.models import Principal, RateLimitStatus, User


def rate_limit_headers(status: RateLimitStatus) -> dict[str, str]:
    """X-RateLimit-* headers describing the binding quota window."""
    return {
        "X-RateLimit-Limit": str(status.limit),
        "X-RateLimit-Remaining": str(status.remaining),
        "X-RateLimit-Reset": str(int(status.reset_time.timestamp())),
    }


def _error_headers(result: AuthResult) -> dict[str, str] | None:
    if result.outcome is AuthOutcome.RATE_LIMIT_EXCEEDED and result.rate_limit is not None:
        headers = rate_limit_headers(result.rate_limit)
        wait = (result.rate_limit.reset_time - datetime.now(timezone.utc)).total_seconds()
        headers["Retry-After"] = str(max(1, math.ceil(wait)))
        return headers
    if result.status_code == 401:
        return {"WWW-Authenticate": "Bearer"}
    return None


def get_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTPException with the gateway's status on failure.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_principal)): ...

    The quota status of API-key requests is stashed on request.state so the
    response middleware can echo X-RateLimit-* headers on successful calls.
    """
    gateway = request.app.state.services.gateway
    result = gateway.authenticate(request.headers.get("Authorization"))
    if not result.ok:
        raise HTTPException(
            status_code=result.status_code,
            detail={"code": result.code, "message": result.message},
            headers=_error_headers(result),
        )
    if result.rate_limit is not None:
        request.state.rate_limit = result.rate_limit
    return result.principal


def get_current_user(request: Request, principal: Principal = Depends(get_principal)) -> User:
    """Resolve the authenticated principal to its User record."""
    user = request.app.state.services.users.get(principal.user_id)
    if user is None:
        # The user was deleted between authentication and this lookup.
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_credential", "message": "Invalid credentials."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_permission(action: str):
    """Dependency factory: the principal must hold `action` on its own user resource.

    Usage:
        @router.post("/keys")
        def route(principal: Principal = Depends(require_permission("write"))): ...
    """

    def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.can(f"user:{principal.user_id}", action):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient permissions."},
            )
        return principal

    return dependency
