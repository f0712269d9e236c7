from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets

TOKEN_PEPPER = os.getenv("TOKEN_PEPPER", "dev-pepper-change-me")
PASSWORD_HASH_ALGORITHM = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = int(os.getenv("PASSWORD_HASH_ITERATIONS", "390000"))
PASSWORD_SALT_BYTES = 16

API_KEY_PREFIX = "sk_"
API_KEY_LOOKUP_LENGTH = 7


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def hash_password(password: str, *, iterations: int | None = None) -> str:
    rounds = iterations or PASSWORD_HASH_ITERATIONS
    salt = secrets.token_bytes(PASSWORD_SALT_BYTES)
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return f"{PASSWORD_HASH_ALGORITHM}${rounds}${_b64(salt)}${_b64(derived)}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algorithm, rounds_raw, salt_raw, expected = encoded.split("$", 3)
        rounds = int(rounds_raw)
        salt = base64.urlsafe_b64decode(salt_raw + "=" * (-len(salt_raw) % 4))
    except ValueError:
        return False
    if algorithm != PASSWORD_HASH_ALGORITHM:
        return False
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(_b64(derived), expected)


def token_digest(token: str) -> str:
    """Deterministic peppered digest for refresh tokens, reset tokens and API keys.

    Deterministic so the session store can match it inside a conditional UPDATE.
    """
    return hmac.new(
        TOKEN_PEPPER.encode("utf-8"),
        token.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_token_digest(token: str, digest: str) -> bool:
    return hmac.compare_digest(token_digest(token), digest)


def generate_api_key() -> tuple[str, str]:
    """Returns ``(raw_key, lookup_prefix)``; the raw key is shown once."""
    raw_key = f"{API_KEY_PREFIX}{secrets.token_hex(32)}"
    return raw_key, raw_key[:API_KEY_LOOKUP_LENGTH]


def placeholder_secret() -> str:
    return secrets.token_hex(32)
