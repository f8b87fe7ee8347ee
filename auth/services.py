"""
auth/services.py -- Composition routine for the credential core.

build_services() is the one place that constructs the store, token generator,
services, rate limiter and gateway, and hands each one the configuration it
needs as explicit constructor arguments. Entry points (api/main.py lifespan,
main.py CLI, tests) call it once; nothing else reaches for global state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from auth.api_keys import ApiKeyService
from auth.gateway import AuthGateway
from auth.migrations import MigrationRunner
from auth.rate_limiter import RateLimiter
from auth.store import CredentialStore
from auth.tokens import TokenGenerator
from auth.users import UserService
from core.config import Settings


@dataclass
class AuthServices:
    store: CredentialStore
    migrations: MigrationRunner
    tokens: TokenGenerator
    users: UserService
    api_keys: ApiKeyService
    rate_limiter: RateLimiter
    gateway: AuthGateway

    def close(self) -> None:
        self.api_keys.close()
        self.rate_limiter.clear()
        self.store.close()


def build_services(settings: Settings, store: CredentialStore | None = None) -> AuthServices:
    """Wire every component from one Settings instance.

    Pass `store` to reuse an existing CredentialStore (tests use isolated
    in-memory stores). Migrations are NOT run here; the caller decides when
    the startup barrier happens.
    """
    store = store if store is not None else CredentialStore.from_settings(settings)
    tokens = TokenGenerator(
        settings.secret_key,
        default_ttl=timedelta(seconds=settings.token_expire_seconds),
        leeway_seconds=settings.token_leeway_seconds,
    )
    users = UserService(store, tokens, UserService.tier_limits_from_settings(settings))
    api_keys = ApiKeyService(
        store,
        settings.secret_key,
        default_rate_limit=users.default_rate_limit,
        max_attempts=settings.api_key_max_attempts,
    )
    rate_limiter = RateLimiter()
    gateway = AuthGateway(store, tokens, api_keys, rate_limiter)
    return AuthServices(
        store=store,
        migrations=MigrationRunner(store),
        tokens=tokens,
        users=users,
        api_keys=api_keys,
        rate_limiter=rate_limiter,
        gateway=gateway,
    )
