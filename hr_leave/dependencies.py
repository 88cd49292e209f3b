"""Shared FastAPI dependencies — bearer token to Actor, capability checks,
and the application's leave cache."""

from __future__ import annotations

import uuid
from typing import Callable

from fastapi import Depends, Request
from jose import ExpiredSignatureError, JWTError, jwt

from hr_leave.common.constants import UserRole
from hr_leave.common.exceptions import ForbiddenException, UnauthorizedException
from hr_leave.config import settings
from hr_leave.leave.cache import LeaveCacheVersions
from hr_leave.leave.schemas import Actor


def _extract_bearer(request: Request) -> str:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise UnauthorizedException("Missing or invalid Authorization header.")
    return auth_header[7:]


# ── Core dependency ─────────────────────────────────────────────────

async def get_current_actor(request: Request) -> Actor:
    """Decode the access token into an Actor with its role's capabilities.

    Identity and roles come from the auth service that issued the token;
    nothing here consults the database.
    """
    token = _extract_bearer(request)

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except ExpiredSignatureError:
        raise UnauthorizedException("Token has expired.")
    except JWTError:
        raise UnauthorizedException("Invalid token.")

    if payload.get("type", "access") != "access":
        raise UnauthorizedException("Invalid token type.")

    try:
        employee_id = uuid.UUID(payload["sub"])
    except (KeyError, ValueError):
        raise UnauthorizedException("Token subject is not an employee id.")

    try:
        role = UserRole(payload.get("role", UserRole.employee.value))
    except ValueError:
        role = UserRole.employee

    return Actor.for_role(employee_id, role)


# ── Capability-based dependency ─────────────────────────────────────

def require_capability(capability: str) -> Callable:
    """Return a FastAPI dependency that enforces a specific capability."""

    async def _check(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.can(capability):
            raise ForbiddenException(
                detail=f"Permission '{capability}' is not granted to role '{actor.role.value}'.",
            )
        return actor

    return _check


# ── Leave cache ─────────────────────────────────────────────────────

def get_leave_cache(request: Request) -> LeaveCacheVersions:
    return request.app.state.leave_cache
