"""Unit tests for auth/tokens.py.

Covers:
- issue/verify round trip returns the user id and truncated expiry
- Expired authentic tokens raise Expired, never InvalidSignature
- Tampered tokens and tokens signed with another secret raise InvalidSignature
- Leeway tolerates small clock skew
- Password hashing and API key helpers
"""

from datetime import timedelta

import pytest
from jose import jwt

from auth.tokens import (
    API_KEY_PREFIX,
    TokenGenerator,
    generate_api_key,
    hash_api_key,
    hash_password,
    is_api_key,
    parse_duration,
    verify_password,
)
from core.errors import Expired, InvalidCredential, InvalidSignature

SECRET = "a" * 32
OTHER_SECRET = "b" * 32


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def test_verify_returns_issued_user():
    gen = TokenGenerator(SECRET)
    token = gen.issue("user-123")
    claims = gen.verify(token.token)
    assert claims.user_id == "user-123"
    assert claims.expires_at == token.expires_at


def test_issue_uses_default_ttl():
    gen = TokenGenerator(SECRET, default_ttl=timedelta(hours=2))
    token = gen.issue("u1")
    claims = jwt.get_unverified_claims(token.token)
    assert claims["exp"] - claims["iat"] == 2 * 3600


def test_expires_at_has_no_microseconds():
    token = TokenGenerator(SECRET).issue("u1", ttl=timedelta(minutes=5))
    assert token.expires_at.microsecond == 0


def test_expired_token_raises_expired_not_invalid_signature():
    gen = TokenGenerator(SECRET)
    token = gen.issue("u1", ttl=timedelta(seconds=-10))
    with pytest.raises(Expired):
        gen.verify(token.token)


def test_expired_is_not_an_invalid_credential_subclass():
    assert not issubclass(Expired, InvalidCredential)


def test_leeway_accepts_recently_expired_token():
    gen = TokenGenerator(SECRET, leeway_seconds=60)
    token = gen.issue("u1", ttl=timedelta(seconds=-10))
    assert gen.verify(token.token).user_id == "u1"


def test_wrong_secret_raises_invalid_signature():
    token = TokenGenerator(OTHER_SECRET).issue("u1")
    with pytest.raises(InvalidSignature):
        TokenGenerator(SECRET).verify(token.token)


def test_expired_token_with_wrong_secret_raises_invalid_signature():
    """Signature is checked before expiry, so a forged stale token is still 'tampered'."""
    token = TokenGenerator(OTHER_SECRET).issue("u1", ttl=timedelta(seconds=-10))
    with pytest.raises(InvalidSignature):
        TokenGenerator(SECRET).verify(token.token)


def test_tampered_payload_raises_invalid_signature():
    gen = TokenGenerator(SECRET)
    header, payload, signature = gen.issue("u1").token.split(".")
    forged = gen.issue("u2").token.split(".")[1]
    with pytest.raises(InvalidSignature):
        gen.verify(f"{header}.{forged}.{signature}")


@pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b.c"])
def test_malformed_token_raises_invalid_signature(garbage):
    with pytest.raises(InvalidSignature):
        TokenGenerator(SECRET).verify(garbage)


def test_token_without_user_id_raises_invalid_signature():
    token = jwt.encode({"sub": "u1", "exp": 9_999_999_999}, SECRET, algorithm="HS256")
    with pytest.raises(InvalidSignature):
        TokenGenerator(SECRET).verify(token)


def test_token_without_exp_raises_invalid_signature():
    token = jwt.encode({"user_id": "u1"}, SECRET, algorithm="HS256")
    with pytest.raises(InvalidSignature):
        TokenGenerator(SECRET).verify(token)


def test_empty_secret_rejected():
    with pytest.raises(ValueError):
        TokenGenerator("")


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "value,seconds",
    [("90s", 90), ("15m", 900), ("24h", 86400), ("7d", 604800), ("2w", 1209600), ("1y", 31536000)],
)
def test_parse_duration(value, seconds):
    assert parse_duration(value) == timedelta(seconds=seconds)


@pytest.mark.parametrize("value", ["", "24", "h", "1.5h", "-1h", "10x"])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_duration(value)


# ---------------------------------------------------------------------------
# Passwords and API keys
# ---------------------------------------------------------------------------


def test_password_hash_verifies():
    hashed = hash_password("Correct1horse")
    assert hashed != "Correct1horse"
    assert verify_password("Correct1horse", hashed)
    assert not verify_password("wrong", hashed)


def test_verify_password_with_malformed_hash_returns_false():
    assert verify_password("anything", "not-a-bcrypt-hash") is False


def test_generated_keys_are_prefixed_and_unique():
    keys = {generate_api_key() for _ in range(50)}
    assert len(keys) == 50
    for key in keys:
        assert key.startswith(API_KEY_PREFIX)
        assert len(key) == len(API_KEY_PREFIX) + 64
        assert is_api_key(key)


def test_jwt_is_not_classified_as_api_key():
    assert not is_api_key(TokenGenerator(SECRET).issue("u1").token)


def test_hash_api_key_is_deterministic_and_keyed():
    key = generate_api_key()
    assert hash_api_key(SECRET, key) == hash_api_key(SECRET, key)
    assert hash_api_key(SECRET, key) != hash_api_key(OTHER_SECRET, key)
    assert len(hash_api_key(SECRET, key)) == 64
