"""
auth/api_keys.py -- API key lifecycle: create, validate, revoke, list.

ApiKeyService is the unit that turns a raw key string into an authorization
decision. It caches nothing: every validate() reads the store, so
a revoke() is visible to the very next request.

Uniqueness:
  Key strings are random (256 bits) and their digests sit behind a UNIQUE
  index. Concurrent creators rely on that constraint, not on an application
  lock. A collision (IntegrityError) triggers regeneration, bounded by
  Settings.api_key_max_attempts, after which KeyGenerationExhausted is raised.

last_used_at:
  Recorded on a small background executor after each successful validation.
  It is advisory metadata: writes may be lost or reordered under concurrency,
  and a failed write is logged, never surfaced to the request. Writes are
  coalesced per key: while one is queued, later validations only move its
  timestamp forward, so a slow store holds at most one pending write per key.

Rate limits:
  A key's policy may be tighter than the owner's subscription tier but never
  looser. Each field is capped by the tier default.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from auth.models import ApiKey, ApiKeyValidation, Permission, RateLimit
from auth.permissions import default_permissions, validate_permission
from auth.store import CredentialStore
from auth.tokens import generate_api_key, hash_api_key
from core.errors import Conflict, Forbidden, InvalidRequest, KeyGenerationExhausted, NotFound

logger = logging.getLogger("authgate.api_keys")

_MAX_NAME_LENGTH = 100


class ApiKeyService:
    def __init__(
        self,
        store: CredentialStore,
        secret: str,
        default_rate_limit: Callable[[object], RateLimit],
        max_attempts: int = 3,
        key_factory: Callable[[], str] = generate_api_key,
        executor: Executor | None = None,
    ) -> None:
        """
        Args:
            store:              Credential persistence.
            secret:             HMAC key for key digests (Settings.secret_key).
            default_rate_limit: Maps a SubscriptionTier to the policy used when
                                create() is called without one.
            max_attempts:       Upper bound on key generation attempts.
            key_factory:        Raw key generator (override in tests).
            executor:           Runs last_used_at writes off the request path.
        """
        self.store = store
        self._secret = secret
        self._default_rate_limit = default_rate_limit
        self.max_attempts = max_attempts
        self._key_factory = key_factory
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="authgate-last-used")
        self._pending_lock = threading.Lock()
        self._pending_last_used: dict[str, datetime] = {}

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        name: str,
        permissions: Sequence[Permission] | None = None,
        rate_limit: RateLimit | None = None,
        expires_at: datetime | None = None,
    ) -> ApiKey:
        """Create a key for user_id. The returned ApiKey.key holds the raw secret (shown once).

        Raises:
            NotFound:               user_id does not exist.
            InvalidRequest:         blank/oversized name, malformed permission, an
                                    expiry already in the past, or a rate limit
                                    above the owner's tier allowance.
            Conflict:               the user already has a key with this name
                                    (checked up front and by the UNIQUE(user_id, name)
                                    index for concurrent creates).
            KeyGenerationExhausted: every generated key collided.
        """
        name = (name or "").strip()
        if not name or len(name) > _MAX_NAME_LENGTH:
            raise InvalidRequest(f"Key name must be 1-{_MAX_NAME_LENGTH} characters.")

        owner = self.store.find_user_by_id(user_id)
        if owner is None:
            raise NotFound("User not found.")

        perms = list(permissions) if permissions else default_permissions(user_id)
        for p in perms:
            if not validate_permission(p):
                raise InvalidRequest("Invalid permission.")

        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= datetime.now(timezone.utc):
                raise InvalidRequest("Expiry must be in the future.")

        if self.store.api_key_name_exists(user_id, name):
            raise Conflict("An API key with that name already exists.")

        ceiling = self._default_rate_limit(owner.subscription)
        if rate_limit is None:
            policy = ceiling
        elif (
            rate_limit.requests_per_hour > ceiling.requests_per_hour
            or rate_limit.requests_per_day > ceiling.requests_per_day
            or rate_limit.max_servers > ceiling.max_servers
        ):
            raise InvalidRequest("Rate limit exceeds the subscription tier allowance.")
        else:
            policy = rate_limit

        for attempt in range(1, self.max_attempts + 1):
            raw_key = self._key_factory()
            candidate = ApiKey(
                user_id=user_id,
                name=name,
                key_hash=hash_api_key(self._secret, raw_key),
                key_prefix=raw_key[:12],
                permissions=perms,
                rate_limit=policy,
                expires_at=expires_at,
            )
            try:
                created = self.store.insert_api_key(candidate)
            except IntegrityError:
                if self.store.api_key_name_exists(user_id, name):
                    raise Conflict("An API key with that name already exists.")
                logger.warning("API key collision on attempt %d/%d", attempt, self.max_attempts)
                continue
            created.key = raw_key
            logger.info("API key %s created for user %s", created.id, user_id)
            return created

        logger.error("API key generation exhausted after %d attempts", self.max_attempts)
        raise KeyGenerationExhausted()

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, raw_key: str) -> ApiKeyValidation:
        """Resolve a raw key into its owner, permissions and policy.

        Invalid (is_valid=False) when the key is unknown or revoked, past its
        expires_at, or its owner no longer exists. Store outages propagate as
        Unavailable; they are not reported as an invalid key.
        """
        if not raw_key:
            return ApiKeyValidation(is_valid=False, reason="not_found")

        key = self.store.find_api_key_by_value(hash_api_key(self._secret, raw_key))
        if key is None:
            return ApiKeyValidation(is_valid=False, reason="not_found")

        if key.expires_at is not None and key.expires_at <= datetime.now(timezone.utc):
            return ApiKeyValidation(is_valid=False, key_id=key.id, user_id=key.user_id, reason="expired")

        if self.store.find_user_by_id(key.user_id) is None:
            logger.warning("API key %s belongs to missing user %s", key.id, key.user_id)
            return ApiKeyValidation(is_valid=False, key_id=key.id, reason="owner_missing")

        self._record_last_used(key.id)
        return ApiKeyValidation(
            is_valid=True,
            key_id=key.id,
            user_id=key.user_id,
            permissions=tuple(key.permissions),
            rate_limit=key.rate_limit,
        )

    def _record_last_used(self, key_id: str) -> None:
        with self._pending_lock:
            queued = key_id in self._pending_last_used
            self._pending_last_used[key_id] = datetime.now(timezone.utc)
        if queued:
            return
        try:
            future = self._executor.submit(self._flush_last_used, key_id)
        except RuntimeError:
            # Executor already shut down during process teardown
            with self._pending_lock:
                self._pending_last_used.pop(key_id, None)
            logger.debug("Skipping last_used_at update for %s: executor closed", key_id)
            return
        future.add_done_callback(_log_last_used_failure)

    def _flush_last_used(self, key_id: str) -> None:
        with self._pending_lock:
            when = self._pending_last_used.pop(key_id, None)
        if when is not None:
            self.store.update_last_used_at(key_id, when)

    # ------------------------------------------------------------------
    # Revoke / list
    # ------------------------------------------------------------------

    def revoke(self, key_id: str, requesting_user_id: str) -> None:
        """Delete a key owned by requesting_user_id.

        Raises NotFound if the key does not exist and Forbidden if it belongs
        to another user.
        """
        key = self.store.find_api_key_by_id(key_id)
        if key is None:
            raise NotFound("API key not found.")
        if key.user_id != requesting_user_id:
            logger.warning("User %s attempted to revoke key %s owned by %s", requesting_user_id, key_id, key.user_id)
            raise Forbidden("You do not own this API key.")
        self.store.delete_api_key(key_id)
        logger.info("API key %s revoked by user %s", key_id, requesting_user_id)

    def list(self, user_id: str) -> list[ApiKey]:
        """Return the user's keys, newest first. Raw key strings are never included."""
        return self.store.list_api_keys_for_user(user_id)

    def close(self) -> None:
        """Wait for pending last_used_at writes, then stop the executor."""
        if self._owns_executor:
            self._executor.shutdown(wait=True)


def _log_last_used_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.warning("Failed to record API key last use: %s", exc)
