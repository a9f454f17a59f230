"""
auth/models.py -- Domain dataclasses for identity, session, and RBAC entities.

Pattern: Data class (pure data containers). Dataclasses own the
domain shape; the store and the session/RBAC services do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class GlobalRole(str, Enum):
    super_admin = "super_admin"
    user = "user"


class SalonRole(str, Enum):
    owner = "owner"
    admin = "admin"
    worker = "worker"
    client = "client"


class PermissionScope(str, Enum):
    global_ = "global"
    salon = "salon"


@dataclass
class User:
    """An identity that can authenticate against SalonBook.

    email is stored lower-cased; uniqueness is enforced by the store.
    is_active=False soft-disables the account: login, refresh, and bearer
    authentication all fail, and RBAC denies every check.
    """

    email: str
    name: str
    hashed_password: str
    id: int | None = None
    phone: str | None = None
    global_role: str = GlobalRole.user.value
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class RefreshToken:
    """One row of the refresh token ledger.

    The only mutation after insert is flipping is_revoked to True. Rows are
    physically deleted only by the retention sweep.
    """

    token: str
    user_id: int
    expires_at: str  # UTC ISO 8601
    id: int | None = None
    is_revoked: bool = False
    created_at: str | None = None


@dataclass
class Salon:
    """A tenant. Users, roles, and resources are isolated per salon."""

    name: str
    slug: str
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class Role:
    name: str  # "owner", "admin", "worker", "client"
    description: str | None = None
    id: int | None = None


@dataclass
class Permission:
    name: str  # e.g. "appointments.create"
    scope: str = PermissionScope.salon.value
    description: str | None = None
    id: int | None = None


@dataclass
class UserSalonRole:
    """RBAC assignment: user holds role within salon.

    Deactivation flips is_active; the row is kept so the assignment can be
    re-activated without losing its history.
    """

    user_id: int
    salon_id: int
    role_id: int
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None
    role_name: str | None = None  # filled by joined queries


@dataclass(frozen=True)
class AccessSnapshot:
    """Effective access of one user within one salon at resolution time.

    Immutable: built per call by RbacResolver and never cached, so a
    deactivated assignment is invisible to the next resolution.
    """

    user_id: int
    salon_id: int
    roles: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[str] = field(default_factory=frozenset)
    is_super_admin: bool = False

    def allows(self, permission: str) -> bool:
        return self.is_super_admin or permission in self.permissions


@dataclass(frozen=True)
class TokenPair:
    """Freshly minted credentials returned by every session-creating operation."""

    access_token: str
    refresh_token: str
    refresh_expires_at: str
    expires_in: int  # access token lifetime in seconds
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password


@dataclass(frozen=True)
class AuthResult:
    tokens: TokenPair
    user: User
