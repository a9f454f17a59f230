"""
auth/seed.py -- Role and permission catalog.

Roles are defined globally; their meaning is per salon through
user_salon_roles. seed_catalog() is idempotent and runs on every API startup
and from ``python main.py seed``.
"""

from __future__ import annotations

import logging

from auth.models import PermissionScope, SalonRole
from auth.store import AuthStore

logger = logging.getLogger("salonbook.auth")

ROLES: dict[str, str] = {
    SalonRole.owner.value: "Salon owner with full access",
    SalonRole.admin.value: "Administrator with management access",
    SalonRole.worker.value: "Worker/Professional who provides services",
    SalonRole.client.value: "Customer who books appointments",
}

# name -> (scope, description)
PERMISSIONS: dict[str, tuple[str, str]] = {
    "salons.manage": (PermissionScope.salon.value, "Edit salon profile and settings"),
    "members.manage": (PermissionScope.salon.value, "Grant and revoke salon roles"),
    "services.manage": (PermissionScope.salon.value, "Create and edit services"),
    "products.manage": (PermissionScope.salon.value, "Manage product inventory"),
    "products.sell": (PermissionScope.salon.value, "Sell products during appointments"),
    "appointments.create": (PermissionScope.salon.value, "Book appointments"),
    "appointments.read": (PermissionScope.salon.value, "View appointments"),
    "appointments.manage": (PermissionScope.salon.value, "Confirm, start, complete, or cancel appointments"),
    "messages.send": (PermissionScope.salon.value, "Send messages to clients"),
    "users.manage": (PermissionScope.global_.value, "Activate and deactivate any account"),
    "salons.administer": (PermissionScope.global_.value, "Activate and deactivate any salon"),
}

_SALON_PERMISSIONS = [name for name, (scope, _) in PERMISSIONS.items() if scope == PermissionScope.salon.value]

ROLE_PERMISSIONS: dict[str, list[str]] = {
    SalonRole.owner.value: _SALON_PERMISSIONS,
    SalonRole.admin.value: [p for p in _SALON_PERMISSIONS if p != "salons.manage"],
    SalonRole.worker.value: ["appointments.read", "appointments.manage", "products.sell"],
    SalonRole.client.value: ["appointments.create", "appointments.read"],
}


def seed_catalog(store: AuthStore) -> int:
    """Insert any missing roles, permissions, and role-permission links.

    Returns the number of role-permission links created (0 on a re-run).
    """
    role_ids = {name: store.ensure_role(name, description) for name, description in ROLES.items()}
    permission_ids = {
        name: store.ensure_permission(name, scope=scope, description=description)
        for name, (scope, description) in PERMISSIONS.items()
    }
    created = 0
    for role, permissions in ROLE_PERMISSIONS.items():
        for permission in permissions:
            if store.ensure_role_permission(role_ids[role], permission_ids[permission]):
                created += 1
    if created:
        logger.info("Seeded catalog: %d roles, %d permissions, %d new links", len(role_ids), len(permission_ids), created)
    return created
