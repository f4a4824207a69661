from __future__ import annotations

import hashlib
import hmac
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from clinic_claims.core.settings import get_settings

_PBKDF2_ITERATIONS = 260_000
_PBKDF2_ALG = "sha256"


@dataclass(frozen=True)
class JwtSession:
    token: str
    expires_at: datetime


def phone_digits(phone: str | None) -> str:
    return "".join(ch for ch in (phone or "") if ch.isdigit())


def mask_phone(phone: str | None, visible: int = 4) -> str:
    digits = phone_digits(phone)
    if not digits:
        return ""
    return f"…{digits[-visible:]}"


def hash_password(password: str, salt: bytes | None = None) -> str:
    """Return ``"pbkdf2_sha256$<iterations>$<hex_salt>$<hex_hash>"``."""
    if salt is None:
        salt = os.urandom(16)
    dk = hashlib.pbkdf2_hmac(_PBKDF2_ALG, password.encode("utf-8"), salt, _PBKDF2_ITERATIONS)
    return f"pbkdf2_{_PBKDF2_ALG}${_PBKDF2_ITERATIONS}${salt.hex()}${dk.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, iterations, hex_salt, hex_hash = encoded.split("$", 3)
    except ValueError:
        return False
    if scheme != f"pbkdf2_{_PBKDF2_ALG}":
        return False
    dk = hashlib.pbkdf2_hmac(
        _PBKDF2_ALG,
        password.encode("utf-8"),
        bytes.fromhex(hex_salt),
        int(iterations),
    )
    return hmac.compare_digest(dk.hex(), hex_hash)


def create_jwt_session(account) -> JwtSession:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=settings.jwt_expiry_hours)
    payload = {
        "sub": str(account.id),
        "username": account.username,
        "role": account.role,
        "patient_id": str(account.patient_id) if account.patient_id else None,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return JwtSession(token=token, expires_at=expires_at)


def decode_jwt_token(token: str, verify_exp: bool = True) -> dict:
    settings = get_settings()
    options = {"verify_exp": verify_exp}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        options=options,
    )


class JwtSessionIssuer:
    """Default authentication collaborator: a signed, self-contained session token."""

    def issue_session(self, account) -> JwtSession:
        return create_jwt_session(account)
