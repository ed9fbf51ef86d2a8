"""Bearer JWT verification for owner-only billing actions."""

from datetime import datetime, timedelta, UTC

import jwt
from fastapi import HTTPException, Request

from listing_billing.config import get_settings


def create_jwt(owner_id: str) -> str:
    """Create a signed JWT for the given business owner."""
    settings = get_settings()
    payload = {
        "sub": str(owner_id),
        "exp": datetime.now(UTC) + timedelta(days=settings.jwt_expire_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _decode_jwt(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(
        token, settings.jwt_secret, algorithms=[settings.jwt_algorithm],
        options={"require": ["exp", "sub"]},
    )


async def get_current_owner(request: Request) -> str:
    """FastAPI dependency: decode the Authorization bearer token and return the owner id, or raise 401."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = _decode_jwt(token.strip())
        owner_id = str(payload["sub"])
    except (jwt.ExpiredSignatureError, jwt.InvalidTokenError, KeyError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return owner_id
