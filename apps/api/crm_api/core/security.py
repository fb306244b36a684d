from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import bcrypt
from jose import JWTError, jwt

from crm_api.core.config import get_settings


TokenType = Literal["access", "refresh"]

PASSWORD_MIN_LENGTH = 12
_SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


class InvalidTokenError(Exception):
    """Raised when a token fails signature, claim or type verification."""


def hash_password(password: str) -> str:
    rounds = get_settings().bcrypt_salt_rounds
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def password_strength_errors(password: str) -> list[str]:
    errors: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_CHARACTERS.search(password):
        errors.append("Password must contain at least one special character")
    return errors


def _signing_key(token_type: TokenType) -> str:
    settings = get_settings()
    return settings.jwt_secret if token_type == "access" else settings.jwt_refresh_secret


def create_token(*, user_id: str, email: str, role: str, token_type: TokenType) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    if token_type == "access":
        expires_at = now + timedelta(minutes=settings.access_token_expire_minutes)
    else:
        expires_at = now + timedelta(days=settings.refresh_token_expire_days)

    claims = {
        "sub": user_id,
        "email": email,
        "role": role,
        "type": token_type,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(claims, _signing_key(token_type), algorithm=settings.jwt_algorithm)


def decode_token(token: str, token_type: TokenType) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            _signing_key(token_type),
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )
    except JWTError as exc:
        raise InvalidTokenError(str(exc)) from exc

    if payload.get("type") != token_type or not payload.get("sub"):
        raise InvalidTokenError(f"not a valid {token_type} token")
    return payload


def create_token_pair(*, user_id: str, email: str, role: str) -> dict[str, str]:
    return {
        "access_token": create_token(user_id=user_id, email=email, role=role, token_type="access"),
        "refresh_token": create_token(user_id=user_id, email=email, role=role, token_type="refresh"),
    }
