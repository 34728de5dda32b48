"""
Signed, expiring session tokens for authenticated chat operations.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import HTTPException, Request

from chatsync.core.logging import get_logger

logger = get_logger(__name__)

SESSION_ALGORITHM = "HS256"
DEFAULT_SESSION_TTL = timedelta(days=7)


def issue_session_token(secret: str, uid: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create an HS256 JWT whose subject is ``uid``."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": uid,
        "iat": now,
        "exp": now + (expires_delta or DEFAULT_SESSION_TTL),
    }
    return jwt.encode(claims, secret, algorithm=SESSION_ALGORITHM)


def verify_session_token(secret: Optional[str], token: Optional[str]) -> Optional[str]:
    """Return the identity carried by a valid, unexpired token, else None."""
    if not secret or not token:
        return None
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[SESSION_ALGORITHM],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        logger.info("Session token expired")
        return None
    except jwt.InvalidTokenError:
        return None

    uid = payload.get("sub")
    if not uid or not isinstance(uid, str):
        return None
    return uid


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value:
        return None
    return value.strip()


class SessionAuthenticator:
    """
    Dependency class resolving the authenticated identity of a request.
    """

    async def __call__(self, request: Request) -> str:
        """
        Validate the Authorization bearer token.

        Raises:
            HTTPException: 401 if the token is missing, invalid or expired
        """
        settings = request.app.state.services.settings
        token = bearer_token(request.headers.get("Authorization"))

        if not token:
            logger.warning("Request missing bearer token")
            raise HTTPException(status_code=401, detail="missing authentication")

        if not settings.is_auth_secret_configured:
            logger.error("AUTH_SECRET environment variable not configured")
            raise HTTPException(status_code=401, detail="missing authentication")

        uid = verify_session_token(settings.auth_secret, token)
        if uid is None:
            logger.warning(
                "Session token verification failed",
                extra={"extra_data": {"received_token": token[:16] + "..."}},
            )
            raise HTTPException(status_code=401, detail="invalid session token")

        return uid


# Dependency instance
get_current_uid = SessionAuthenticator()
