"""
JWT handling for the attempts service.

Tokens are issued by the platform's auth service; this module only verifies
them. create_access_token is kept for scripts and tests.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from examengine.settings import settings

logger = logging.getLogger(__name__)


class TokenPayload(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None
    exp: Optional[datetime] = None
    iat: Optional[datetime] = None


def create_access_token(
    user_id: str,
    email: Optional[str] = None,
    role: str = "STUDENT",
    expires_delta: Optional[timedelta] = None,
) -> str:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))

    payload = {
        "sub": user_id,
        "user_id": user_id,
        "role": role,
        "exp": expire,
        "iat": now,
    }
    if email:
        payload["email"] = email

    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> Optional[TokenPayload]:
    """Decode and validate a bearer token. Returns None when it is unusable."""
    try:
        # jose rejects expired tokens itself when "exp" is present.
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.warning(f"Token verification failed: {e}")
        return None

    user_id = payload.get("user_id") or payload.get("sub")
    if not user_id:
        logger.warning("Token carries no user identity")
        return None

    exp = payload.get("exp")
    iat = payload.get("iat")
    return TokenPayload(
        user_id=str(user_id),
        email=payload.get("email"),
        role=payload.get("role"),
        exp=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
        iat=datetime.fromtimestamp(iat, tz=timezone.utc) if iat else None,
    )
