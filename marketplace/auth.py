"""Caller identity from the auth provider's bearer JWT."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header
from jose import JWTError, jwt

from .errors import Unauthorized
from .settings import AUTH_JWT_AUDIENCE, AUTH_JWT_SECRET

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"


@dataclass(frozen=True)
class User:
    id: str
    email: Optional[str] = None
    role: str = "authenticated"


def decode_token(token: str, secret: str = None, audience: str = None) -> Optional[dict]:
    """Verify a JWT. Returns its claims, or None if it is not acceptable."""
    secret = AUTH_JWT_SECRET if secret is None else secret
    audience = AUTH_JWT_AUDIENCE if audience is None else audience
    if not secret:
        logger.error("AUTH_JWT_SECRET not set; rejecting bearer token")
        return None
    try:
        return jwt.decode(token, secret, algorithms=[_ALGORITHM], audience=audience)
    except JWTError as exc:
        logger.info("Rejected bearer token: %s", exc)
        return None


def current_user(authorization: Optional[str] = Header(None)) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized()
    claims = decode_token(authorization[7:].strip())
    if not claims or not claims.get("sub"):
        raise Unauthorized()
    return User(id=str(claims["sub"]), email=claims.get("email"), role=claims.get("role", "authenticated"))
