"""
auth/store.py -- SQLAlchemy Core persistence layer for identity, sessions, and RBAC.

Pattern: Repository + Data Mapper. AuthStore is the repository (one clean
interface per entity); the _row_to_* functions are the mappers that translate
raw rows into the dataclasses in auth/models.py. Services never touch SQL.

Transactions:
  Every write method accepts an optional ``conn``. Without it the method runs
  in its own short transaction (engine.begin()). With it, the method joins the
  caller's transaction, which is how SessionManager makes "insert user + insert
  refresh token" and "revoke old token + insert new token" atomic:

      with store.transaction() as conn:
          if not store.revoke_refresh_token(old, conn=conn):
              raise Unauthorized()
          store.add_refresh_token(new_record, conn=conn)

  An exception inside the block rolls back everything, including the revoke.

Security:
  All queries use bound parameters. No f-strings in SQL.

Integrity:
  UNIQUE(users.email), UNIQUE(refresh_tokens.token),
  UNIQUE(user_salon_roles.user_id, salon_id, role_id) and
  UNIQUE(role_permissions.role_id, permission_id) are enforced in SQL.
  Foreign keys are enforced per connection (SQLite needs PRAGMA foreign_keys).
  Violations surface as sqlalchemy.exc.IntegrityError; callers decide what a
  violation means (register turns a duplicate email into Conflict).

Timestamps are UTC ISO 8601 strings at second precision. Fixed width means
string comparison in SQL orders them correctly.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Permission, PermissionScope, RefreshToken, Role, Salon, User, UserSalonRole
from core.config import get_settings

logger = logging.getLogger("salonbook.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("phone", String(20)),
    Column("hashed_password", Text, nullable=False),
    Column("global_role", String(20), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", Text, nullable=False, unique=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Index("ix_refresh_tokens_user_id", "user_id"),
)

_salons = Table(
    "salons",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("slug", String(100), nullable=False, unique=True),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", Text),
    Column("created_at", String(32), nullable=False),
)

_permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(150), nullable=False, unique=True),
    Column("description", Text),
    Column("scope", String(20), nullable=False, server_default="salon"),
    Column("created_at", String(32), nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
)

_user_salon_roles = Table(
    "user_salon_roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("salon_id", Integer, ForeignKey("salons.id", ondelete="CASCADE"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="RESTRICT"), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "salon_id", "role_id", name="uq_user_salon_role"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys is OFF by default in SQLite.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO 8601 string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def from_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, the refresh token ledger, salons, and RBAC tables.

    Usage:
        store = AuthStore()                                # settings.database_url
        store = AuthStore("sqlite:///:memory:")            # tests
        store = AuthStore("postgresql://user:pw@host/db")  # production
        user_id = store.create_user(User(email="ana@x.com", name="Ana", hashed_password=h))
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # Writers queue on the database lock instead of failing with "database is locked".
            connect_args["timeout"] = 30
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open a transaction that several store calls can join via conn=."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _connect(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User, conn: Connection | None = None) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        The email is lower-cased here so uniqueness is case-insensitive.
        """
        with self._connect(conn) as c:
            result = c.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    name=user.name,
                    phone=user.phone,
                    hashed_password=user.hashed_password,
                    global_role=user.global_role,
                    is_active=1 if user.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: name, phone, global_role, is_active, hashed_password.
        Returns True if a row was updated, False if user_id was not found.
        """
        allowed = {"name", "phone", "global_role", "is_active", "hashed_password"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Refresh token ledger
    # ------------------------------------------------------------------

    def add_refresh_token(self, record: RefreshToken, conn: Connection | None = None) -> int:
        """Append a refresh token to the ledger. Raises IntegrityError on a duplicate token string."""
        with self._connect(conn) as c:
            result = c.execute(
                _refresh_tokens.insert().values(
                    token=record.token,
                    user_id=record.user_id,
                    expires_at=record.expires_at,
                    is_revoked=1 if record.is_revoked else 0,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def list_refresh_tokens(self, user_id: int) -> list[RefreshToken]:
        """Return every ledger row for a user, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.created_at, _refresh_tokens.c.id)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def revoke_refresh_token(
        self, token: str, conn: Connection | None = None, user_id: int | None = None
    ) -> bool:
        """Flip is_revoked on one token, only if it is not already revoked.

        This is the conditional update rotation relies on: of several callers
        presenting the same token concurrently, exactly one sees True.

        user_id, when given, must also match the owner (IDOR guard for logout).
        """
        condition = (_refresh_tokens.c.token == token) & (_refresh_tokens.c.is_revoked == 0)
        if user_id is not None:
            condition = condition & (_refresh_tokens.c.user_id == user_id)
        with self._connect(conn) as c:
            result = c.execute(_refresh_tokens.update().where(condition).values(is_revoked=1))
        return result.rowcount == 1

    def revoke_all_refresh_tokens(self, user_id: int, conn: Connection | None = None) -> int:
        """Revoke every non-revoked token owned by user_id. Returns the number revoked."""
        with self._connect(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1)
            )
        return result.rowcount

    def count_active_refresh_tokens(self, user_id: int) -> int:
        """Count tokens that are neither revoked nor expired."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.expires_at > _now_iso())
                )
            ).scalar()
        return result or 0

    def revoke_oldest_refresh_tokens(self, user_id: int, keep: int, conn: Connection | None = None) -> int:
        """Revoke active tokens of user_id beyond the newest ``keep``.

        Used to enforce MAX_ACTIVE_SESSIONS before a new token is appended.
        Returns the number revoked.
        """
        with self._connect(conn) as c:
            rows = c.execute(
                select(_refresh_tokens.c.id)
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.expires_at > _now_iso())
                )
                .order_by(_refresh_tokens.c.created_at.desc(), _refresh_tokens.c.id.desc())
            ).fetchall()
            stale_ids = [r.id for r in rows[max(keep, 0) :]]
            if not stale_ids:
                return 0
            result = c.execute(
                _refresh_tokens.update()
                .where(_refresh_tokens.c.id.in_(stale_ids) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1)
            )
        return result.rowcount

    def purge_refresh_tokens(self, cutoff: datetime) -> int:
        """Retention sweep: delete tokens that expired before ``cutoff``.

        Revoked-but-unexpired rows are kept until they expire so a replayed
        token is still recognized (and logged) as revoked.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < to_iso(cutoff)))
        logger.info("Purged %d refresh tokens expired before %s", result.rowcount, to_iso(cutoff))
        return result.rowcount

    # ------------------------------------------------------------------
    # Salons
    # ------------------------------------------------------------------

    def create_salon(self, salon: Salon, conn: Connection | None = None) -> int:
        """Insert a salon. Raises IntegrityError if the slug is taken."""
        with self._connect(conn) as c:
            result = c.execute(
                _salons.insert().values(
                    name=salon.name,
                    slug=salon.slug,
                    is_active=1 if salon.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_salon(self, salon_id: int) -> Salon | None:
        with self.engine.connect() as conn:
            row = conn.execute(_salons.select().where(_salons.c.id == salon_id)).fetchone()
        return _row_to_salon(row) if row is not None else None

    def get_salon_by_slug(self, slug: str) -> Salon | None:
        with self.engine.connect() as conn:
            row = conn.execute(_salons.select().where(_salons.c.slug == slug)).fetchone()
        return _row_to_salon(row) if row is not None else None

    def lock_salon(self, salon_id: int, conn: Connection) -> None:
        """Take a row lock on the salon for the rest of conn's transaction.

        Serializes membership changes per salon on backends with SELECT ...
        FOR UPDATE. SQLite ignores the clause; its single writer already
        serializes the transaction once it writes.
        """
        conn.execute(select(_salons.c.id).where(_salons.c.id == salon_id).with_for_update())

    def set_salon_active(self, salon_id: int, active: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _salons.update().where(_salons.c.id == salon_id).values(is_active=1 if active else 0)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Role / permission catalog
    # ------------------------------------------------------------------

    def ensure_role(self, name: str, description: str | None = None) -> int:
        """Return the id of role ``name``, inserting it first if missing. Idempotent."""
        with self.engine.begin() as conn:
            row = conn.execute(select(_roles.c.id).where(_roles.c.name == name)).fetchone()
            if row is not None:
                return row.id
            result = conn.execute(_roles.insert().values(name=name, description=description, created_at=_now_iso()))
            return result.inserted_primary_key[0]

    def ensure_permission(
        self, name: str, scope: str = PermissionScope.salon.value, description: str | None = None
    ) -> int:
        """Return the id of permission ``name``, inserting it first if missing. Idempotent."""
        with self.engine.begin() as conn:
            row = conn.execute(select(_permissions.c.id).where(_permissions.c.name == name)).fetchone()
            if row is not None:
                return row.id
            result = conn.execute(
                _permissions.insert().values(
                    name=name,
                    scope=scope,
                    description=description,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def ensure_role_permission(self, role_id: int, permission_id: int) -> bool:
        """Link a role to a permission. Returns True if a new link was created."""
        with self.engine.begin() as conn:
            row = conn.execute(
                select(_role_permissions.c.id).where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission_id)
                )
            ).fetchone()
            if row is not None:
                return False
            conn.execute(
                _role_permissions.insert().values(
                    role_id=role_id,
                    permission_id=permission_id,
                    created_at=_now_iso(),
                )
            )
        return True

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.name)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def get_role_permission_names(self, role_ids: Iterable[int], scope: str | None = None) -> set[str]:
        """Return the names of permissions linked to any of ``role_ids``.

        scope, when given, restricts the result to permissions of that scope.
        """
        role_ids = list(role_ids)
        if not role_ids:
            return set()
        query = (
            select(_permissions.c.name)
            .select_from(_role_permissions.join(_permissions, _role_permissions.c.permission_id == _permissions.c.id))
            .where(_role_permissions.c.role_id.in_(role_ids))
        )
        if scope is not None:
            query = query.where(_permissions.c.scope == scope)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return {r.name for r in rows}

    # ------------------------------------------------------------------
    # User <-> salon <-> role assignments
    # ------------------------------------------------------------------

    def assign_role(self, user_id: int, salon_id: int, role_id: int, conn: Connection | None = None) -> int:
        """Grant role_id to user_id within salon_id and return the assignment id.

        Re-granting a deactivated assignment re-activates the existing row
        rather than inserting a duplicate triple. Raises IntegrityError if any
        referenced user, salon, or role does not exist.
        """
        with self._connect(conn) as c:
            row = c.execute(
                select(_user_salon_roles.c.id).where(
                    (_user_salon_roles.c.user_id == user_id)
                    & (_user_salon_roles.c.salon_id == salon_id)
                    & (_user_salon_roles.c.role_id == role_id)
                )
            ).fetchone()
            if row is not None:
                c.execute(_user_salon_roles.update().where(_user_salon_roles.c.id == row.id).values(is_active=1))
                return row.id
            result = c.execute(
                _user_salon_roles.insert().values(
                    user_id=user_id,
                    salon_id=salon_id,
                    role_id=role_id,
                    is_active=1,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def deactivate_role(self, user_id: int, salon_id: int, role_id: int, conn: Connection | None = None) -> bool:
        """Deactivate an assignment. Returns False if no active assignment matched."""
        with self._connect(conn) as c:
            result = c.execute(
                _user_salon_roles.update()
                .where(
                    (_user_salon_roles.c.user_id == user_id)
                    & (_user_salon_roles.c.salon_id == salon_id)
                    & (_user_salon_roles.c.role_id == role_id)
                    & (_user_salon_roles.c.is_active == 1)
                )
                .values(is_active=0)
            )
        return result.rowcount > 0

    def count_active_role_holders(self, salon_id: int, role_id: int, conn: Connection | None = None) -> int:
        """Number of users actively holding role_id in salon_id.

        Used to prevent removing the last owner of a salon. Pass the conn of
        the transaction that deactivated an assignment to see its own write.
        """
        with self._connect(conn) as c:
            result = c.execute(
                select(func.count())
                .select_from(_user_salon_roles)
                .where(
                    (_user_salon_roles.c.salon_id == salon_id)
                    & (_user_salon_roles.c.role_id == role_id)
                    & (_user_salon_roles.c.is_active == 1)
                )
            ).scalar()
        return result or 0

    def get_active_salon_roles(self, user_id: int, salon_id: int) -> list[UserSalonRole]:
        """Return the active assignments of user_id within salon_id, with role names."""
        query = (
            select(_user_salon_roles, _roles.c.name.label("role_name"))
            .select_from(_user_salon_roles.join(_roles, _user_salon_roles.c.role_id == _roles.c.id))
            .where(
                (_user_salon_roles.c.user_id == user_id)
                & (_user_salon_roles.c.salon_id == salon_id)
                & (_user_salon_roles.c.is_active == 1)
            )
            .order_by(_roles.c.name)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user_salon_role(r) for r in rows]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        phone=row.phone,
        hashed_password=row.hashed_password,
        global_role=row.global_role,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        expires_at=row.expires_at,
        is_revoked=bool(row.is_revoked),
        created_at=row.created_at,
    )


def _row_to_salon(row) -> Salon:
    return Salon(
        id=row.id,
        name=row.name,
        slug=row.slug,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_role(row) -> Role:
    return Role(id=row.id, name=row.name, description=row.description)


def _row_to_permission(row) -> Permission:
    return Permission(id=row.id, name=row.name, scope=row.scope, description=row.description)


def _row_to_user_salon_role(row) -> UserSalonRole:
    return UserSalonRole(
        id=row.id,
        user_id=row.user_id,
        salon_id=row.salon_id,
        role_id=row.role_id,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        role_name=row.role_name,
    )
