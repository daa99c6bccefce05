from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.core.config import get_settings
from panelsync.persistence.db import get_session
from panelsync.services.provisioning import ProvisioningOrchestrator, get_orchestrator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "unauthorized", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_admin(authorization: str | None = Header(default=None)) -> None:
    """Accept only the configured admin bearer key."""
    expected = get_settings().admin_api_key
    if not expected:
        raise _auth_error("Admin API key is not configured")
    if not authorization:
        raise _auth_error("Missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _auth_error("Authorization header must use Bearer scheme")
    if not hmac.compare_digest(token.strip().encode(), expected.encode()):
        raise _auth_error("Invalid admin key")


def get_provisioning_orchestrator() -> ProvisioningOrchestrator:
    return get_orchestrator()
