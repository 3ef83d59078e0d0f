"""Password hashing, bearer tokens, and the ``get_current_user`` dependency.

Passwords are hashed with bcrypt. Tokens are HS256 JWTs carrying the user's
``id`` and ``username`` and expire after ``settings.token_expiry_hours``.
The principal is taken from the token alone; handlers that need the full
``User`` row look it up in the store themselves.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt as _bcrypt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel, ValidationError

from dietcim.config import settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


class Principal(BaseModel):
    """The authenticated identity extracted from a bearer token."""

    id: int
    username: str


# ── Passwords ─────────────────────────────────────────────────────────────────


def hash_password(password: str, rounds: int = 10) -> str:
    """Return a salted bcrypt hash of *password*."""
    return _bcrypt.hashpw(password.encode(), _bcrypt.gensalt(rounds)).decode()


def check_password(password: str, password_hash: str) -> bool:
    """Recompute and compare; over-long passwords and bad hashes never match."""
    try:
        return _bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


# ── Tokens ────────────────────────────────────────────────────────────────────


def create_access_token(
    user_id: int, username: str, now: Optional[datetime] = None
) -> str:
    """Sign a token for the given user.

    Args:
        user_id: Identifier placed in the ``id`` claim.
        username: Username placed in the ``username`` claim.
        now: Issue time; defaults to the current UTC time.

    Returns:
        The encoded JWT string.
    """
    issued = now or datetime.now(tz=timezone.utc)
    claims = {
        "id": user_id,
        "username": username,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(hours=settings.token_expiry_hours)).timestamp()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Principal:
    """Verify signature and expiry and return the principal.

    Raises:
        HTTPException: 401 if the token is expired, tampered with, or
            missing the identity claims.
    """
    try:
        claims = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except ExpiredSignatureError as exc:
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    try:
        return Principal(id=claims.get("id"), username=claims.get("username"))
    except ValidationError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Principal:
    """FastAPI dependency resolving the ``Authorization: Bearer`` header.

    Usage::

        async def my_endpoint(user: Principal = Depends(get_current_user)) -> ...:
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Not authenticated")
    return decode_access_token(credentials.credentials)
