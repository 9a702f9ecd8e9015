"""Simple JWT authentication helpers."""
from __future__ import annotations

import jwt
from fastapi import Header, HTTPException, status

from subscription_engine.core.config import settings
from subscription_engine.domain.subscriber import SubscriberRef


def require_auth(authorization: str = Header(...)) -> SubscriberRef:
    """Validate a bearer token and return the subscriber it identifies."""

    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )

    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALG],
        )
    except jwt.InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc

    subscriber_type = payload.get("subscriber_type")
    subscriber_id = payload.get("subscriber_id") or payload.get("sub")
    if not subscriber_type or not subscriber_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Subscriber missing in token",
        )

    return SubscriberRef(type=str(subscriber_type), id=str(subscriber_id))
