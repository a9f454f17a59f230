"""
auth/sessions.py -- Session lifecycle: register, login, refresh, logout.

SessionManager composes the credential store, the password verifier, and the
token issuer. It owns the refresh token ledger rules:

  - Every session-creating operation appends exactly one ledger row.
  - A refresh token is single-use. refresh() revokes the presented token with a
    conditional update and appends its replacement in the same transaction, so
    two concurrent refreshes of one token cannot both succeed and a failed
    insert leaves the old token untouched.
  - Expired tokens are revoked as a side effect of being presented.
  - logout() is idempotent; logout_all() revokes every live token of a user.

State machine of a ledger row:  active -> revoked (terminal).
An expired row is revoked the first time it is presented.

Errors: Conflict for a taken email, Unauthorized for everything else. All
Unauthorized raised here carry one of two fixed messages so the caller cannot
distinguish "unknown email" from "wrong password" or "revoked" from "never
issued".

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict, Unauthorized
from auth.models import AuthResult, GlobalRole, User
from auth.store import AuthStore, from_iso
from auth.tokens import authenticate_user, hash_password, issue_token_pair
from core.config import get_settings

logger = logging.getLogger("salonbook.auth")

_BAD_CREDENTIALS = "Invalid credentials."
_BAD_REFRESH = "Invalid refresh token."


class SessionManager:
    """Orchestrates the session lifecycle against one AuthStore.

    max_active_sessions caps live refresh tokens per user (0 = unlimited).
    When the cap is reached, the oldest live tokens are revoked to make room
    for the new one.
    """

    def __init__(self, store: AuthStore, max_active_sessions: int | None = None) -> None:
        self._store = store
        if max_active_sessions is None:
            max_active_sessions = get_settings().max_active_sessions
        self._max_active_sessions = max_active_sessions

    # ------------------------------------------------------------------
    # Registration / login
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        email: str,
        password: str,
        phone: str | None = None,
        global_role: str = GlobalRole.user.value,
    ) -> AuthResult:
        """Create an account and its first session.

        The user row and the first refresh token are written in one
        transaction. A duplicate email, whether caught by the pre-check or by
        the unique constraint under a race, raises Conflict.
        """
        email = email.strip().lower()
        if self._store.get_by_email(email) is not None:
            raise Conflict()

        user = User(
            email=email,
            name=name,
            phone=phone,
            hashed_password=hash_password(password),
            global_role=global_role,
        )
        try:
            with self._store.transaction() as conn:
                user.id = self._store.create_user(user, conn=conn)
                result = self._start_session(user, conn)
        except IntegrityError as exc:
            # The losing writer of a concurrent registration lands here.
            raise Conflict() from exc

        logger.info("Registered user_id=%s", user.id)
        return result

    def login(self, email: str, password: str) -> AuthResult:
        user = authenticate_user(self._store, email, password)
        if user is None:
            logger.info("Failed login for email=%s", email.strip().lower())
            raise Unauthorized(_BAD_CREDENTIALS)

        with self._store.transaction() as conn:
            result = self._start_session(user, conn)
        self._store.update_last_login(user.id)
        logger.info("Login user_id=%s", user.id)
        return result

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> AuthResult:
        """Rotate a refresh token: revoke it and issue a new pair for the same user."""
        record = self._store.get_refresh_token(refresh_token)
        if record is None:
            raise Unauthorized(_BAD_REFRESH)
        if record.is_revoked:
            # Replay of a rotated-out or logged-out token.
            logger.warning("Revoked refresh token presented for user_id=%s", record.user_id)
            raise Unauthorized(_BAD_REFRESH)

        if from_iso(record.expires_at) <= datetime.now(timezone.utc):
            self._store.revoke_refresh_token(refresh_token)
            logger.info("Expired refresh token revoked for user_id=%s", record.user_id)
            raise Unauthorized(_BAD_REFRESH)

        user = self._store.get_by_id(record.user_id)
        if user is None or not user.is_active:
            self._store.revoke_refresh_token(refresh_token)
            raise Unauthorized(_BAD_REFRESH)

        with self._store.transaction() as conn:
            if not self._store.revoke_refresh_token(refresh_token, conn=conn):
                # A concurrent refresh or logout revoked it after our read.
                logger.warning("Lost refresh race for user_id=%s", user.id)
                raise Unauthorized(_BAD_REFRESH)
            result = self._start_session(user, conn)

        logger.info("Rotated refresh token for user_id=%s", user.id)
        return result

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, refresh_token: str, user_id: int | None = None) -> None:
        """Revoke one refresh token. No-op if absent or already revoked.

        user_id restricts the revoke to tokens owned by that user, so an
        authenticated caller cannot sign someone else out.
        """
        if self._store.revoke_refresh_token(refresh_token, user_id=user_id):
            logger.info("Logout revoked one refresh token")

    def logout_all(self, user_id: int) -> int:
        """Revoke every live refresh token of user_id ("sign out everywhere")."""
        count = self._store.revoke_all_refresh_tokens(user_id)
        logger.info("Logout-all revoked %d refresh tokens for user_id=%s", count, user_id)
        return count

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_session(self, user: User, conn: Connection) -> AuthResult:
        pair, record = issue_token_pair(user)
        if self._max_active_sessions > 0:
            revoked = self._store.revoke_oldest_refresh_tokens(user.id, keep=self._max_active_sessions - 1, conn=conn)
            if revoked:
                logger.info("Session cap revoked %d oldest tokens for user_id=%s", revoked, user.id)
        self._store.add_refresh_token(record, conn=conn)
        return AuthResult(tokens=pair, user=user)
