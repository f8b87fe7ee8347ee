"""
auth/users.py -- Registration, login, and subscription management.

UserService owns the account rules that sit in front of the credential store:
input validation, password hashing, duplicate detection, and the
subscription-tier default rate limits that ApiKeyService attaches to new keys.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy.exc import IntegrityError

from auth.models import AuthToken, RateLimit, SubscriptionTier, User
from auth.store import CredentialStore
from auth.tokens import DUMMY_HASH, TokenGenerator, hash_password, verify_password
from core.errors import Conflict, InvalidCredential, InvalidRequest, NotFound

logger = logging.getLogger("authgate.users")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_-]{3,50}$")


def validate_registration(email: str, username: str, password: str) -> None:
    """Raise InvalidRequest describing the first rule the input breaks."""
    if not email or not _EMAIL_RE.match(email):
        raise InvalidRequest("Invalid email format.")
    if not username or not _USERNAME_RE.match(username):
        raise InvalidRequest("Username must be 3-50 characters: letters, numbers, underscores, hyphens.")
    if not password or len(password) < 8:
        raise InvalidRequest("Password must be at least 8 characters long.")
    if not (re.search(r"[a-z]", password) and re.search(r"[A-Z]", password) and re.search(r"\d", password)):
        raise InvalidRequest("Password must contain a lowercase letter, an uppercase letter, and a number.")


class UserService:
    def __init__(self, store: CredentialStore, tokens: TokenGenerator, tier_limits: dict[SubscriptionTier, RateLimit]):
        self.store = store
        self.tokens = tokens
        self._tier_limits = dict(tier_limits)

    @classmethod
    def tier_limits_from_settings(cls, settings) -> dict[SubscriptionTier, RateLimit]:
        return {
            SubscriptionTier.FREE: RateLimit(*settings.free_rate_limit),
            SubscriptionTier.BASIC: RateLimit(*settings.basic_rate_limit),
            SubscriptionTier.PREMIUM: RateLimit(*settings.premium_rate_limit),
            SubscriptionTier.ENTERPRISE: RateLimit(*settings.enterprise_rate_limit),
        }

    def default_rate_limit(self, tier: SubscriptionTier) -> RateLimit:
        """Policy for new keys of a user on `tier`. Unknown tiers get the free policy."""
        try:
            return self._tier_limits[SubscriptionTier(tier)]
        except (KeyError, ValueError):
            return self._tier_limits[SubscriptionTier.FREE]

    def register(
        self,
        email: str,
        username: str,
        password: str,
        subscription: SubscriptionTier = SubscriptionTier.FREE,
    ) -> User:
        """Create an account.

        Raises InvalidRequest on malformed input and Conflict when the email or
        username is taken. The pre-checks give a friendly message; the UNIQUE
        constraints decide races between concurrent registrations.
        """
        email = (email or "").strip().lower()
        username = (username or "").strip()
        validate_registration(email, username, password)

        if self.store.find_user_by_email(email) is not None:
            raise Conflict("Email already registered.")
        if self.store.find_user_by_username(username) is not None:
            raise Conflict("Username already taken.")

        try:
            user = self.store.insert_user(
                User(
                    email=email,
                    username=username,
                    password_hash=hash_password(password),
                    subscription=SubscriptionTier(subscription),
                )
            )
        except IntegrityError as exc:
            raise Conflict("Email or username already registered.") from exc
        logger.info("User %s registered (%s)", user.id, user.subscription.value)
        return user

    def login(self, email: str, password: str, ttl=None) -> AuthToken:
        """Verify a password and issue a session token.

        Always runs bcrypt whether or not the email exists, so response time
        does not reveal which emails are registered. Every failure raises the
        same InvalidCredential.
        """
        user = self.store.find_user_by_email((email or "").strip().lower())
        if user is None:
            verify_password(password or "", DUMMY_HASH)
            raise InvalidCredential("Invalid email or password.")
        if not verify_password(password or "", user.password_hash):
            raise InvalidCredential("Invalid email or password.")
        return self.tokens.issue(user.id, ttl)

    def get(self, user_id: str) -> User | None:
        return self.store.find_user_by_id(user_id)

    def change_subscription(self, user_id: str, tier: SubscriptionTier) -> User:
        """Move a user to another tier. Existing keys keep their policy; new keys get the new default."""
        try:
            tier = SubscriptionTier(tier)
        except ValueError as exc:
            raise InvalidRequest("Unknown subscription tier.") from exc
        if not self.store.update_user_subscription(user_id, tier):
            raise NotFound("User not found.")
        return self.store.find_user_by_id(user_id)
