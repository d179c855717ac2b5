# =============================================================================
# Auth Service — API Keys, Actors & Project Authorization
# =============================================================================
#
# Pure logic with no FastAPI dependency, so services, scripts and tests can
# all use it.
#
# DESIGN DECISION: SHA-256 hashing (not bcrypt). API keys are 32-byte
# random tokens (256 bits of entropy). SHA-256 is deterministic (needed for
# DB lookup) and fast enough for per-request validation. Bcrypt's
# deliberate slowness only matters for low-entropy human passwords.
#
# DESIGN DECISION: Authorization answers one question:
# "can actor U perform action A on project P". The rule table:
#
#   action     creator  assignee  admin
#   ───────────────────────────────────
#   view          ✓        ✓        ✓
#   upload        ✓        ✓        ✓
#   analyze       ✓        ✓        ✓
#   ask           ✓        ✓        ✓
#   delete        ✓        ✗        ✓
# =============================================================================

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Project
from app.errors import AccessDenied, NotFound

ADMIN_SCOPE = "admin"

# Actions restricted to the project creator (and admins)
_CREATOR_ONLY_ACTIONS = frozenset({"delete"})


def generate_api_key() -> tuple[str, str, str]:
    """
    Generate a new API key.

    Returns:
        (raw_key, key_prefix, key_hash):
        - raw_key: Full key to return to the user (only visible once)
        - key_prefix: First 8 chars for identification in logs
        - key_hash: SHA-256 hex digest for storage in the database
    """
    raw_key = f"sk-{secrets.token_hex(32)}"
    return raw_key, raw_key[:8], hash_api_key(raw_key)


def hash_api_key(raw_key: str) -> str:
    """Hash an API key using SHA-256. Returns 64-char hex digest."""
    return hashlib.sha256(raw_key.encode()).hexdigest()


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of a pipeline operation."""

    user_id: str
    is_admin: bool = False


def is_allowed(project: Project, actor: Actor, action: str) -> bool:
    if actor.is_admin or project.created_by == actor.user_id:
        return True
    if action in _CREATOR_ONLY_ACTIONS:
        return False
    return actor.user_id in (project.assigned_to or [])


class ProjectAuthorizer:
    """Loads a project and checks an actor's permission on it."""

    async def check(
        self,
        session: AsyncSession,
        project_id: str,
        actor: Actor,
        action: str,
    ) -> Project:
        """
        Return the project if `actor` may perform `action` on it.

        Raises:
            NotFound: The project does not exist.
            AccessDenied: The actor lacks permission.
        """
        project = await session.get(Project, project_id)
        if project is None:
            raise NotFound(f"Project {project_id} not found")
        if not is_allowed(project, actor, action):
            raise AccessDenied(
                f"User {actor.user_id} may not {action} in project {project_id}"
            )
        return project
