"""
auth/rbac.py -- Tenant-scoped role-based access control.

RbacResolver answers "may user U do P in salon S?" by reading, per call:

    users               -> is the user present and active? super_admin?
    salons              -> is the salon present and active?
    user_salon_roles    -> active role assignments of U in S
    role_permissions    -> salon-scoped permissions granted by those roles

Guard order matters and is fixed:
  1. Missing or inactive user  -> deny.
  2. global_role super_admin   -> allow everything, in every salon, without
                                  consulting salon assignments.
  3. Missing or inactive salon -> deny.
  4. Salon resolution          -> allow iff the permission is in the set.

Global-scoped permissions are never granted through salon roles; only the
super_admin guard can satisfy them.

Nothing is cached and nothing is read from the token. Deactivating an
assignment is visible on the very next call.

Missing referenced entities are a deny, never an error, so the answer does
not reveal whether a user or salon exists.
"""

from __future__ import annotations

import logging

from auth.models import AccessSnapshot, GlobalRole, PermissionScope
from auth.store import AuthStore

logger = logging.getLogger("salonbook.rbac")


class RbacResolver:
    def __init__(self, store: AuthStore) -> None:
        self._store = store

    def resolve(self, user_id: int, salon_id: int) -> AccessSnapshot:
        """Build the effective access of user_id within salon_id.

        Returns an empty snapshot (no roles, no permissions) for any missing or
        inactive user or salon.
        """
        empty = AccessSnapshot(user_id=user_id, salon_id=salon_id)

        user = self._store.get_by_id(user_id)
        if user is None or not user.is_active:
            return empty
        if user.global_role == GlobalRole.super_admin.value:
            return AccessSnapshot(user_id=user_id, salon_id=salon_id, is_super_admin=True)

        salon = self._store.get_salon(salon_id)
        if salon is None or not salon.is_active:
            return empty

        assignments = self._store.get_active_salon_roles(user_id, salon_id)
        if not assignments:
            return empty
        permissions = self._store.get_role_permission_names(
            (a.role_id for a in assignments),
            scope=PermissionScope.salon.value,
        )
        return AccessSnapshot(
            user_id=user_id,
            salon_id=salon_id,
            roles=frozenset(a.role_name for a in assignments),
            permissions=frozenset(permissions),
        )

    def authorize(self, user_id: int, salon_id: int, permission: str) -> bool:
        allowed = self.resolve(user_id, salon_id).allows(permission)
        if not allowed:
            logger.info("Access denied: user_id=%s salon_id=%s permission=%s", user_id, salon_id, permission)
        return allowed
