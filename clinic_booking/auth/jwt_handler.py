import hashlib
from datetime import datetime, timedelta, timezone

import jwt

from clinic_booking.core import config

ROLES = ("patient", "doctor", "admin")
PASSWORD_RESET_PURPOSE = "password_reset"


def _encode(payload: dict, expires_minutes: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {**payload, "exp": now + timedelta(minutes=expires_minutes), "iat": now}
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def create_access_token(subject: str, role: str, expires_minutes: int | None = None) -> str:
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    return _encode({"sub": subject, "role": role}, expires_minutes or config.JWT_EXPIRES_MINUTES)


def decode_access_token(token: str) -> dict:
    payload = jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    if payload.get("role") not in ROLES:
        raise jwt.InvalidTokenError("Token does not carry a known role")
    return payload


def password_fingerprint(hashed_password: str) -> str:
    # Changes with the password, so a used reset link stops working.
    return hashlib.sha256(hashed_password.encode()).hexdigest()[:16]


def create_password_reset_token(subject: str, hashed_password: str, expires_minutes: int | None = None) -> str:
    payload = {
        "sub": subject,
        "purpose": PASSWORD_RESET_PURPOSE,
        "pwd": password_fingerprint(hashed_password),
    }
    return _encode(payload, expires_minutes or config.PASSWORD_RESET_EXPIRES_MINUTES)


def decode_password_reset_token(token: str) -> dict:
    payload = jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    if payload.get("purpose") != PASSWORD_RESET_PURPOSE or not payload.get("sub"):
        raise jwt.InvalidTokenError("Not a password reset token")
    return payload
