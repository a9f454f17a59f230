"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and RBAC.

Authentication is bearer-only: ``Authorization: Bearer <access token>``.
Refresh tokens are rejected here by their ``type`` claim.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_permission(name) builds a dependency that additionally resolves the
caller's access in the ``salon_id`` path parameter. A denied permission is
Unauthorized (HTTP 401), the same taxonomy as every other auth failure.

The user row is re-read on every request, so deactivating an account takes
effect immediately even though access tokens are stateless.

Layer rule: this module may import fastapi because it is part of the
dependency injection system. It does not import from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import Unauthorized
from auth.models import GlobalRole, User
from auth.rbac import RbacResolver
from auth.store import AuthStore
from auth.tokens import decode_access_token

_DENIED = "Permission denied."


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via its bearer access token. Never raises."""
    token = _bearer_token(request)
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None
    store: AuthStore = request.app.state.auth_store
    user = store.get_by_id(payload["user_id"])
    if user is None or not user.is_active:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_super_admin(request: Request) -> User:
    user = get_current_user(request)
    if user.global_role != GlobalRole.super_admin.value:
        raise Unauthorized(_DENIED)
    return user


def require_permission(permission: str) -> Callable[[Request, int], User]:
    """Build a dependency that requires ``permission`` in the path's salon.

    The route must declare a ``salon_id: int`` path parameter:

        @router.post("/salons/{salon_id}/members")
        async def route(salon_id: int, user: User = Depends(require_permission("members.manage"))): ...
    """

    def dependency(request: Request, salon_id: int) -> User:
        user = get_current_user(request)
        resolver: RbacResolver = request.app.state.rbac
        if not resolver.authorize(user.id, salon_id, permission):
            raise Unauthorized(_DENIED)
        return user

    return dependency
