"""
auth/tokens.py -- JWT issuing/verification and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Both token types carry ``sub`` (user id as a
       string), ``email``, ``type`` ("access" or "refresh"), a random ``jti``,
       ``iat`` and ``exp``. Verification returns None on any failure -- the
       caller turns that into Unauthorized.

       The ``type`` claim stops a refresh token from being replayed as a bearer
       credential. The ``jti`` makes two tokens minted for the same user in the
       same second distinct, which the ledger's UNIQUE(token) depends on.

       Access tokens are stateless and never persisted. Refresh tokens are
       persisted by SessionManager so each one can be revoked individually.

  Passwords: bcrypt directly (no passlib wrapper) with a fixed cost factor from
       Settings.bcrypt_rounds. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered.

  SECRET_KEY: sourced from core.config.get_settings(), validated at startup.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import RefreshToken, TokenPair, User
from auth.store import to_iso
from core.config import get_settings

if TYPE_CHECKING:
    from auth.store import AuthStore

logger = logging.getLogger("salonbook.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only considers the first 72 bytes. RegisterRequest rejects
    passwords over 72 UTF-8 bytes so nothing a user typed is silently ignored.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8")[:72], salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB; treat as a mismatch.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("salonbook_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _encode(user_id: int, email: str, token_type: str, lifetime: timedelta) -> tuple[str, datetime]:
    now = datetime.now(timezone.utc)
    expire = now + lifetime
    payload = {
        "sub": str(user_id),
        "email": email,
        "type": token_type,
        "jti": secrets.token_urlsafe(16),
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM), expire


def create_access_token(user_id: int, email: str, expire_seconds: int = 0) -> str:
    """Encode a short-lived access token.

    expire_seconds overrides Settings.access_token_expire_minutes when > 0.
    """
    seconds = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_minutes * 60
    token, _ = _encode(user_id, email, ACCESS, timedelta(seconds=seconds))
    return token


def create_refresh_token(user_id: int, email: str, expire_seconds: int = 0) -> tuple[str, datetime]:
    """Encode a long-lived refresh token and return it with its expiry.

    The caller is responsible for persisting the token in the ledger; an
    unpersisted refresh token is never honoured.
    """
    seconds = expire_seconds if expire_seconds > 0 else _settings.refresh_token_expire_days * 24 * 60 * 60
    return _encode(user_id, email, REFRESH, timedelta(seconds=seconds))


def issue_token_pair(user: User) -> tuple[TokenPair, RefreshToken]:
    """Mint an access/refresh pair for ``user``.

    Returns the pair for the client and the ledger record the caller must
    persist (inside its own transaction).
    """
    access = create_access_token(user.id, user.email)
    refresh, refresh_expires = create_refresh_token(user.id, user.email)
    expires_at = to_iso(refresh_expires)
    pair = TokenPair(
        access_token=access,
        refresh_token=refresh,
        refresh_expires_at=expires_at,
        expires_in=_settings.access_token_expire_minutes * 60,
    )
    record = RefreshToken(token=refresh, user_id=user.id, expires_at=expires_at)
    return pair, record


def decode_token(token: str, expected_type: str = ACCESS) -> dict | None:
    """Decode and verify a JWT of the expected type.

    Returns the payload dict or None on any failure: bad signature, expired,
    malformed, missing claims, or wrong ``type``.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != expected_type or "sub" not in payload or "email" not in payload:
        return None
    try:
        payload["user_id"] = int(payload["sub"])
    except (TypeError, ValueError):
        return None
    return payload


def decode_access_token(token: str) -> dict | None:
    """Decode a bearer access token. Refresh tokens are rejected."""
    return decode_token(token, ACCESS)


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: AuthStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Inactive accounts are rejected after the hash check so they cost the same.
    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user
