from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import jwt

JWT_SECRET = os.getenv("JWT_SECRET", "dev-access-secret-change-me-in-production")
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "dev-refresh-secret-change-me-in-production")
JWT_RESET_SECRET = os.getenv("JWT_RESET_SECRET", "dev-reset-secret-change-me-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_ACCESS_EXPIRES_MIN = int(os.getenv("JWT_ACCESS_EXPIRES_MIN", "15"))
JWT_REFRESH_EXPIRES_DAYS = int(os.getenv("JWT_REFRESH_EXPIRES_DAYS", "7"))
RESET_TOKEN_EXPIRES_MIN = int(os.getenv("RESET_TOKEN_EXPIRES_MIN", "60"))

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_RESET = "reset"


class TokenError(Exception):
    pass


class TokenExpiredError(TokenError):
    pass


class TokenInvalidError(TokenError):
    pass


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    role: str
    session_id: str
    tenant_id: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


def refresh_expires_at(now: datetime | None = None) -> datetime:
    return (now or datetime.now(UTC)) + timedelta(days=JWT_REFRESH_EXPIRES_DAYS)


def reset_expires_at(now: datetime | None = None) -> datetime:
    return (now or datetime.now(UTC)) + timedelta(minutes=RESET_TOKEN_EXPIRES_MIN)


def _encode(payload: dict[str, Any], secret: str, lifetime: timedelta) -> str:
    now = datetime.now(UTC)
    body = dict(payload)
    body["iat"] = int(now.timestamp())
    body["exp"] = int((now + lifetime).timestamp())
    return jwt.encode(body, secret, algorithm=JWT_ALGORITHM)


def _decode(token: str, secret: str, expected_type: str) -> dict[str, Any]:
    try:
        decoded = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpiredError("Token expired") from exc
    except jwt.PyJWTError as exc:
        raise TokenInvalidError("Invalid token") from exc
    if not isinstance(decoded, dict) or decoded.get("type") != expected_type:
        raise TokenInvalidError("Invalid token type")
    return decoded


def generate_tokens(claims: AccessClaims) -> TokenPair:
    access_token = _encode(
        {
            "sub": claims.user_id,
            "email": claims.email,
            "role": claims.role,
            "sid": claims.session_id,
            "tenant_id": claims.tenant_id,
            "type": TOKEN_TYPE_ACCESS,
        },
        JWT_SECRET,
        timedelta(minutes=JWT_ACCESS_EXPIRES_MIN),
    )
    refresh_token = _encode(
        {
            "sub": claims.user_id,
            "sid": claims.session_id,
            "tenant_id": claims.tenant_id,
            "type": TOKEN_TYPE_REFRESH,
            "jti": str(uuid4()),
        },
        JWT_REFRESH_SECRET,
        timedelta(days=JWT_REFRESH_EXPIRES_DAYS),
    )
    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=JWT_ACCESS_EXPIRES_MIN * 60,
    )


def decode_access_token(token: str) -> dict[str, Any]:
    return _decode(token, JWT_SECRET, TOKEN_TYPE_ACCESS)


def verify_refresh_token(token: str) -> dict[str, Any]:
    return _decode(token, JWT_REFRESH_SECRET, TOKEN_TYPE_REFRESH)


def generate_reset_token(user_id: str) -> str:
    return _encode(
        {"sub": user_id, "type": TOKEN_TYPE_RESET, "jti": str(uuid4())},
        JWT_RESET_SECRET,
        timedelta(minutes=RESET_TOKEN_EXPIRES_MIN),
    )


def verify_reset_token(token: str) -> dict[str, Any]:
    return _decode(token, JWT_RESET_SECRET, TOKEN_TYPE_RESET)


def decode_unverified(token: str) -> dict[str, Any]:
    try:
        decoded = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        raise TokenInvalidError("Malformed token") from exc
    if not isinstance(decoded, dict):
        raise TokenInvalidError("Malformed token")
    return decoded
