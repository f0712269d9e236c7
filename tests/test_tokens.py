from __future__ import annotations

from datetime import timedelta

import jwt
import pytest

from erp_api.infra import auth, hashing


def _claims() -> auth.AccessClaims:
    return auth.AccessClaims(
        user_id="user-1",
        email="ana@example.com",
        role="ADMIN",
        session_id="session-1",
        tenant_id="org-1",
    )


def test_generate_tokens_carries_expected_claims() -> None:
    pair = auth.generate_tokens(_claims())
    access = auth.decode_access_token(pair.access_token)
    refresh = auth.verify_refresh_token(pair.refresh_token)

    assert pair.expires_in == auth.JWT_ACCESS_EXPIRES_MIN * 60
    assert access["sub"] == "user-1"
    assert access["email"] == "ana@example.com"
    assert access["role"] == "ADMIN"
    assert access["sid"] == "session-1"
    assert access["tenant_id"] == "org-1"
    assert refresh["sid"] == "session-1"
    assert refresh["tenant_id"] == "org-1"
    assert refresh["jti"]


def test_token_kinds_use_independent_secrets() -> None:
    pair = auth.generate_tokens(_claims())
    with pytest.raises(auth.TokenInvalidError):
        auth.verify_refresh_token(pair.access_token)
    with pytest.raises(auth.TokenInvalidError):
        auth.decode_access_token(pair.refresh_token)
    with pytest.raises(auth.TokenInvalidError):
        auth.verify_reset_token(pair.refresh_token)


def test_refresh_tokens_are_unique_per_issue() -> None:
    first = auth.generate_tokens(_claims())
    second = auth.generate_tokens(_claims())
    assert first.refresh_token != second.refresh_token


def test_expired_and_invalid_tokens_are_distinguishable() -> None:
    expired = auth._encode(
        {"sub": "user-1", "type": auth.TOKEN_TYPE_RESET},
        auth.JWT_RESET_SECRET,
        timedelta(seconds=-30),
    )
    with pytest.raises(auth.TokenExpiredError):
        auth.verify_reset_token(expired)

    forged = jwt.encode(
        {"sub": "user-1", "type": "reset"},
        "not-the-reset-secret-used-by-the-service",
        algorithm="HS256",
    )
    with pytest.raises(auth.TokenInvalidError):
        auth.verify_reset_token(forged)


def test_reset_token_round_trip() -> None:
    token = auth.generate_reset_token("user-9")
    claims = auth.verify_reset_token(token)
    assert claims["sub"] == "user-9"
    assert claims["type"] == "reset"


def test_decode_unverified_reads_tenant_without_secret() -> None:
    pair = auth.generate_tokens(_claims())
    assert auth.decode_unverified(pair.access_token)["tenant_id"] == "org-1"
    with pytest.raises(auth.TokenInvalidError):
        auth.decode_unverified("not-a-jwt")


def test_password_hashing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(hashing, "PASSWORD_HASH_ITERATIONS", 1000)
    encoded = hashing.hash_password("Str0ng!Pass")
    assert encoded.startswith("pbkdf2_sha256$1000$")
    assert encoded != hashing.hash_password("Str0ng!Pass")
    assert hashing.verify_password("Str0ng!Pass", encoded)
    assert not hashing.verify_password("wrong", encoded)
    assert not hashing.verify_password("Str0ng!Pass", "garbage")


def test_token_digest_is_deterministic_and_peppered(monkeypatch: pytest.MonkeyPatch) -> None:
    digest = hashing.token_digest("refresh-token")
    assert digest == hashing.token_digest("refresh-token")
    assert hashing.verify_token_digest("refresh-token", digest)
    assert not hashing.verify_token_digest("other-token", digest)

    monkeypatch.setattr(hashing, "TOKEN_PEPPER", "another-pepper")
    assert hashing.token_digest("refresh-token") != digest


def test_api_key_format() -> None:
    raw_key, prefix = hashing.generate_api_key()
    assert raw_key.startswith("sk_")
    assert len(raw_key) == 3 + 64
    assert prefix == raw_key[:7]
