"""
Access tokens for API callers.

Tokens are JWTs signed with RS256 key files in production or an HS256 shared
secret (``JWT_SECRET``) in development and tests. Claims:

    sub              user id
    organisation_id  tenant the caller acts in
    role             signoff.domain.enums.Role value
    branch_id        optional
    email            optional
"""

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

from jose import jwt, JWTError
import structlog

from signoff.config import settings

logger = structlog.get_logger()

REQUIRED_CLAIMS = ("sub", "organisation_id", "role")


@lru_cache(maxsize=4)
def _read_key(path: str) -> str:
    with open(path, "r") as f:
        return f.read()


def _key(path: Optional[str]) -> str:
    if settings.JWT_ALGORITHM.upper().startswith("HS"):
        if not settings.JWT_SECRET:
            raise JWTError("JWT_SECRET is not configured")
        return settings.JWT_SECRET
    if not path:
        raise JWTError(f"No key file configured for {settings.JWT_ALGORITHM}")
    return _read_key(path)


def create_access_token(
    user_id: str,
    organisation_id: str,
    role: str,
    email: Optional[str] = None,
    branch_id: Optional[str] = None,
) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "organisation_id": str(organisation_id),
        "role": role,
        "email": email,
        "iat": now,
        "exp": now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        "type": "access",
    }
    if branch_id:
        claims["branch_id"] = str(branch_id)
    return jwt.encode(claims, _key(settings.JWT_PRIVATE_KEY_PATH), algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str) -> dict:
    """Decode, check signature and expiry, and require the identity claims. Raises JWTError."""
    payload = jwt.decode(
        token, _key(settings.JWT_PUBLIC_KEY_PATH), algorithms=[settings.JWT_ALGORITHM]
    )
    if payload.get("type") != "access":
        raise JWTError("Not an access token")
    missing = [claim for claim in REQUIRED_CLAIMS if not payload.get(claim)]
    if missing:
        raise JWTError(f"Missing claims: {', '.join(missing)}")
    return payload
