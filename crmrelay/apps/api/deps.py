from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from crmrelay.core.config import get_settings
from crmrelay.services.runtime import RelayRuntime, get_runtime


def get_relay_runtime(request: Request) -> RelayRuntime:
    # Apps built with an explicit runtime (tests, embedding) keep it on app.state.
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        runtime = get_runtime()
        request.app.state.runtime = runtime
    return runtime


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request from the runtime's session factory.
    runtime = get_relay_runtime(request)
    async with runtime.session_factory() as session:
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


async def require_ops_token(authorization: str | None = Header(default=None)) -> None:
    # Ops routes mutate queue state; guard them whenever a token is configured.
    expected = get_settings().ops_api_token
    if not expected:
        return
    token = _parse_bearer_token(authorization)
    if token is None or not hmac.compare_digest(token, expected):
        raise _auth_error("Missing or invalid bearer token")
