"""
API request and response models for SalonBook REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import AccessSnapshot, AuthResult, Salon, User

# bcrypt ignores everything past 72 bytes; reject longer input instead.
_PASSWORD_MAX = 72

SLUG_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SalonRoleEnum(str, Enum):
    owner = "owner"
    admin = "admin"
    worker = "worker"
    client = "client"


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(min_length=6, max_length=_PASSWORD_MAX)
    phone: Optional[str] = Field(default=None, max_length=20)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, v: str) -> str:
        # bcrypt only reads the first 72 bytes; multi-byte characters count per byte.
        if len(v.encode("utf-8")) > _PASSWORD_MAX:
            raise ValueError(f"password must be at most {_PASSWORD_MAX} bytes when UTF-8 encoded")
        return v


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    email is a plain string here (not EmailStr): a malformed address must get
    the same 401 as a wrong password, not a 422 that reveals the format check.
    """

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh and POST /auth/logout."""

    refresh_token: str = Field(min_length=1, max_length=4096)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}."""

    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str


class AuthResponse(BaseModel):
    """Token pair plus user summary, returned by register, login, and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int
    refresh_expires_at: str
    user: UserSummary

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        return cls(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
            expires_in=result.tokens.expires_in,
            refresh_expires_at=result.tokens.refresh_expires_at,
            user=UserSummary(id=result.user.id, name=result.user.name, email=result.user.email),
        )


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    phone: Optional[str]
    global_role: str
    is_active: bool
    created_at: str
    last_login: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "MeResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            phone=user.phone,
            global_role=user.global_role,
            is_active=user.is_active,
            created_at=user.created_at or "",
            last_login=user.last_login,
        )


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Salons and RBAC
# ---------------------------------------------------------------------------


class SalonCreate(BaseModel):
    """Request body for POST /api/v1/salons. The caller becomes the owner."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    slug: str = Field(min_length=1, max_length=100, pattern=SLUG_PATTERN)


class SalonResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    slug: str
    is_active: bool

    @classmethod
    def from_salon(cls, salon: Salon) -> "SalonResponse":
        return cls(id=salon.id, name=salon.name, slug=salon.slug, is_active=salon.is_active)


class AccessResponse(BaseModel):
    """The caller's effective roles and permissions within one salon."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    salon_id: int
    roles: list[str]
    permissions: list[str]
    is_super_admin: bool

    @classmethod
    def from_snapshot(cls, snapshot: AccessSnapshot) -> "AccessResponse":
        return cls(
            user_id=snapshot.user_id,
            salon_id=snapshot.salon_id,
            roles=sorted(snapshot.roles),
            permissions=sorted(snapshot.permissions),
            is_super_admin=snapshot.is_super_admin,
        )


class MemberAssign(BaseModel):
    """Request body for POST /api/v1/salons/{salon_id}/members."""

    user_id: int = Field(gt=0)
    role: SalonRoleEnum


class MemberResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    assignment_id: int
    user_id: int
    salon_id: int
    role: str
    is_active: bool


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
