"""Signed ``state`` values for partner OAuth redirects.

Partner callbacks (UPS, Shopify) arrive without our bearer token, so the
state parameter carries the user id and the post-authorization redirect,
signed with the app secret and valid for a short window.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from fastapi import HTTPException, status
from jose import JWTError, jwt

from prepfox.config import settings

STATE_TTL = timedelta(minutes=15)


def create_oauth_state(user_id: str, provider: str, redirect_to: Optional[str] = None) -> str:
    payload = {
        "sub": user_id,
        "prv": provider,
        "rdr": redirect_to,
        "exp": datetime.now(timezone.utc) + STATE_TTL,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.ALGORITHM)


def decode_oauth_state(state: Optional[str], provider: str) -> Tuple[str, Optional[str]]:
    """Return ``(user_id, redirect_to)`` or raise 400 ``invalid_state``."""
    invalid = HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "invalid_state", "message": "OAuth state is missing, expired or forged"},
    )
    if not state:
        raise invalid
    try:
        payload = jwt.decode(state, settings.secret_key, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise invalid
    if payload.get("prv") != provider or not payload.get("sub"):
        raise invalid
    return payload["sub"], payload.get("rdr")
