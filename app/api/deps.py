# =============================================================================
# API Dependencies — Services & Caller Identity
# =============================================================================
#
# Two FastAPI dependencies shared by every router:
#
# 1. get_services() — the process-wide service container
# 2. get_actor()    — resolve the caller to an Actor (user id + admin flag)
#
# DESIGN DECISION: FastAPI dependency (not middleware) for auth.
# - Each endpoint opts in via Depends(get_actor)
# - The resolved Actor flows into the services, which do the
#   project-level authorization themselves
# - Testable via dependency_overrides
#
# DESIGN DECISION: HTTPBearer(auto_error=False) so that when auth is
# disabled, missing headers don't cause errors. With auth disabled the
# caller is taken from the X-User-Id header (or settings.dev_user_id) and
# acts as an admin.
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import lru_cache

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.engine import async_session_factory, get_async_session
from app.db.models import ApiKey
from app.services.auth import ADMIN_SCOPE, Actor, hash_api_key
from app.services.container import Services, build_services

logger = logging.getLogger(__name__)

# Security scheme for OpenAPI docs (shows "Authorize" button in Swagger UI)
_bearer_scheme = HTTPBearer(auto_error=False)


@lru_cache
def get_services() -> Services:
    """Build the service container once per API process."""
    return build_services(settings, async_session_factory)


async def get_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    x_user_id: str | None = Header(default=None),
    session: AsyncSession = Depends(get_async_session),
) -> Actor:
    """
    Resolve the caller of the current request.

    When auth_enabled=False: Actor(X-User-Id or dev_user_id, admin).
    When auth_enabled=True:
    - Extracts Bearer token from Authorization header
    - SHA-256 hashes and looks up in api_keys table
    - Validates: is_active, not expired
    - Updates last_used_at

    Raises:
        HTTPException 401: Missing or invalid API key
        HTTPException 403: Key is inactive or expired
    """
    if not settings.auth_enabled:
        return Actor(user_id=x_user_id or settings.dev_user_id, is_admin=True)

    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Provide 'Authorization: Bearer <key>' header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    key_hash = hash_api_key(credentials.credentials)
    api_key = (
        await session.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
    ).scalar_one_or_none()

    if api_key is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not api_key.is_active:
        raise HTTPException(status_code=403, detail="API key has been deactivated.")

    expires_at = api_key.expires_at
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    if expires_at is not None and expires_at < datetime.now(UTC):
        raise HTTPException(status_code=403, detail="API key has expired.")

    api_key.last_used_at = datetime.now(UTC)
    return Actor(
        user_id=api_key.user_id,
        is_admin=ADMIN_SCOPE in (api_key.scopes or []),
    )
