"""
auth.py — bearer JWT verification for the chat API.

The user/auth service issues HS256 tokens whose `sub` claim is the user id.
This module only verifies them; create_access_token exists for local
tooling and tests.

Usage in routes:
    async def route(user_id: str = Depends(get_current_user)): ...
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from brain.config import settings
from brain.errors import Unauthorized

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, expires_minutes: Optional[int] = None) -> str:
    """Sign a token for user_id with an `exp` claim."""
    minutes = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes
    expires = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    claims = {"sub": str(user_id), "exp": int(expires.timestamp())}
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> Optional[str]:
    """Return the `sub` claim if the token is valid, otherwise None."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> str:
    """FastAPI dependency: authenticated user id, or 401."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthorized("Missing bearer token")
    user_id = verify_token(credentials.credentials)
    if user_id is None:
        logger.info("Rejected invalid or expired token")
        raise Unauthorized("Invalid or expired token")
    return user_id
