"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST  /api/v1/auth/register        -- create account; 201 with token pair
  POST  /api/v1/auth/login           -- password login; 200 with token pair
  POST  /api/v1/auth/refresh         -- rotate refresh token; 200 with new pair
  POST  /api/v1/auth/logout          -- revoke one refresh token (requires auth)
  POST  /api/v1/auth/logout-all      -- revoke every session of the caller (requires auth)
  GET   /api/v1/auth/me              -- current user profile (requires auth)
  PATCH /api/v1/auth/users/{id}      -- activate/deactivate an account (super_admin)

Security:
  POST /register and POST /login are rate-limited per IP (Settings).
  Session errors (Conflict, Unauthorized) propagate to the AuthError handler in
  api/main.py, which renders the standard error envelope.
  Cache-Control: no-store on every response that carries tokens.
  Logout only revokes tokens owned by the caller.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.limiter import limiter
from api.models import (
    AuthResponse,
    LoginRequest,
    LogoutAllResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    UserPatch,
)
from auth.dependencies import get_current_user, require_super_admin
from auth.errors import NotFound
from auth.models import User
from auth.sessions import SessionManager
from auth.store import AuthStore
from core.config import get_settings

_settings = get_settings()

router = APIRouter()


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
@limiter.limit(_settings.register_rate_limit)
def register(request: Request, response: Response, body: RegisterRequest) -> AuthResponse:
    """Create an account and return its first token pair. 409 if the email is taken."""
    sessions: SessionManager = request.app.state.sessions
    result = sessions.register(body.name, body.email, body.password, phone=body.phone)
    _no_store(response)
    return AuthResponse.from_result(result)


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(_settings.login_rate_limit)
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password.

    Unknown email, wrong password, and inactive account all return the same
    401 body.
    """
    sessions: SessionManager = request.app.state.sessions
    result = sessions.login(body.email, body.password)
    _no_store(response)
    return AuthResponse.from_result(result)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(request: Request, response: Response, body: RefreshRequest) -> AuthResponse:
    """Exchange a refresh token for a new pair. The presented token is revoked."""
    sessions: SessionManager = request.app.state.sessions
    result = sessions.refresh(body.refresh_token)
    _no_store(response)
    return AuthResponse.from_result(result)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: RefreshRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Revoke one refresh token. Always 200, even if it was already revoked."""
    sessions: SessionManager = request.app.state.sessions
    sessions.logout(body.refresh_token, user_id=current_user.id)
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(request: Request, current_user: User = Depends(get_current_user)) -> LogoutAllResponse:
    """Sign out everywhere. Access tokens already issued stay valid until they expire."""
    sessions: SessionManager = request.app.state.sessions
    return LogoutAllResponse(revoked=sessions.logout_all(current_user.id))


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    return MeResponse.from_user(current_user)


# ---------------------------------------------------------------------------
# Account administration (super_admin only)
# ---------------------------------------------------------------------------


@router.patch("/auth/users/{user_id}", response_model=MeResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(require_super_admin),
) -> MeResponse:
    """Activate or deactivate an account.

    Deactivation also revokes every refresh token of the account, and blocks
    self-deactivation so a super_admin cannot lock themselves out.
    """
    store: AuthStore = request.app.state.auth_store
    sessions: SessionManager = request.app.state.sessions

    target = store.get_by_id(user_id)
    if target is None:
        raise NotFound("User not found.")
    if body.is_active is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if not body.is_active and target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )

    store.update_user(user_id, is_active=body.is_active)
    if not body.is_active:
        sessions.logout_all(user_id)
    return MeResponse.from_user(store.get_by_id(user_id))
