"""Bearer-token adapter: reduces the Authorization header to a user id."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Header
from jose import JWTError, jwt

import config
from errors import Unauthorized

log = logging.getLogger("api.auth")


def decode_user_id(token: str) -> str:
    if not config.JWT_SECRET:
        raise Unauthorized("Token verification is not configured")
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError as e:
        log.debug("Rejected bearer token: %s", e)
        raise Unauthorized("Invalid or expired token") from e
    user_id = payload.get("userId") or payload.get("sub")
    if not user_id:
        raise Unauthorized("Token carries no user identity")
    return str(user_id)


def current_user(authorization: Optional[str] = Header(None)) -> str:
    """FastAPI dependency; every tracker route depends on it."""
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Authentication required")
    return decode_user_id(authorization[len("Bearer "):].strip())
