from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from channelplane.core.config import get_settings
from channelplane.persistence.db import get_session


OPS_ACTOR_ID = "ops"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_ops_token(
    request: Request,
    authorization: str | None = Header(default=None),
) -> str:
    # Ops surface is operator-only; an unset token disables it rather than leaving it open.
    expected = get_settings().ops_api_token
    token = _parse_bearer_token(authorization)
    if not expected or not token or not hmac.compare_digest(expected, token):
        raise _auth_error("Missing or invalid bearer token")
    request.state.actor_id = OPS_ACTOR_ID
    return OPS_ACTOR_ID
