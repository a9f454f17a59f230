"""
api/routes/v1/salons.py -- Salon (tenant) creation and role assignment endpoints.

Routes:
  POST   /api/v1/salons                                     -- create salon; caller becomes owner
  GET    /api/v1/salons/{salon_id}/access                   -- caller's roles/permissions in the salon
  POST   /api/v1/salons/{salon_id}/members                  -- grant a role (members.manage)
  DELETE /api/v1/salons/{salon_id}/members/{uid}/roles/{r}  -- deactivate a role (members.manage)

Every permission check goes through RbacResolver at request time, so a
deactivated assignment loses access on the next request regardless of how
fresh the caller's access token is.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import AccessResponse, MemberAssign, MemberResponse, SalonCreate, SalonResponse, SalonRoleEnum
from auth.dependencies import get_current_user, require_permission
from auth.errors import NotFound
from auth.models import Salon, SalonRole, User
from auth.rbac import RbacResolver
from auth.store import AuthStore

logger = logging.getLogger("salonbook.api")

router = APIRouter()


@router.post("/salons", response_model=SalonResponse, status_code=201)
def create_salon(
    request: Request,
    body: SalonCreate,
    current_user: User = Depends(get_current_user),
) -> SalonResponse:
    """Create a salon and make the caller its owner, atomically."""
    store: AuthStore = request.app.state.auth_store
    owner_role = store.get_role_by_name(SalonRole.owner.value)
    if owner_role is None:
        raise RuntimeError("Role catalog is not seeded; run `python main.py seed`.")

    try:
        with store.transaction() as conn:
            salon_id = store.create_salon(Salon(name=body.name, slug=body.slug), conn=conn)
            store.assign_role(current_user.id, salon_id, owner_role.id, conn=conn)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A salon with that slug already exists."},
        ) from exc

    logger.info("Salon %s created by user_id=%s", salon_id, current_user.id)
    return SalonResponse.from_salon(store.get_salon(salon_id))


@router.get("/salons/{salon_id}/access", response_model=AccessResponse)
def my_access(
    request: Request,
    salon_id: int,
    current_user: User = Depends(get_current_user),
) -> AccessResponse:
    """Return the caller's effective access. Unknown salons yield an empty set, not 404."""
    resolver: RbacResolver = request.app.state.rbac
    return AccessResponse.from_snapshot(resolver.resolve(current_user.id, salon_id))


@router.post("/salons/{salon_id}/members", response_model=MemberResponse, status_code=201)
def assign_member(
    request: Request,
    salon_id: int,
    body: MemberAssign,
    current_user: User = Depends(require_permission("members.manage")),
) -> MemberResponse:
    """Grant ``body.role`` to ``body.user_id`` in this salon (re-activates a revoked grant)."""
    store: AuthStore = request.app.state.auth_store

    target = store.get_by_id(body.user_id)
    if target is None or not target.is_active:
        raise NotFound("User not found.")
    role = store.get_role_by_name(body.role.value)
    if role is None:
        raise NotFound("Role not found.")

    assignment_id = store.assign_role(target.id, salon_id, role.id)
    logger.info(
        "Role %s granted to user_id=%s in salon_id=%s by user_id=%s",
        role.name,
        target.id,
        salon_id,
        current_user.id,
    )
    return MemberResponse(
        assignment_id=assignment_id,
        user_id=target.id,
        salon_id=salon_id,
        role=role.name,
        is_active=True,
    )


@router.delete("/salons/{salon_id}/members/{user_id}/roles/{role}", status_code=204)
def revoke_member_role(
    request: Request,
    salon_id: int,
    user_id: int,
    role: SalonRoleEnum,
    current_user: User = Depends(require_permission("members.manage")),
) -> Response:
    """Deactivate one role assignment.

    Refuses to remove the last active owner of a salon: without an owner
    nobody but a super_admin could manage members again. The deactivation
    and the remaining-owner count share one transaction, so two concurrent
    removals cannot both see another owner left; raising rolls it back.
    """
    store: AuthStore = request.app.state.auth_store
    role_row = store.get_role_by_name(role.value)
    if role_row is None:
        raise NotFound("Role not found.")

    with store.transaction() as conn:
        if role is SalonRoleEnum.owner:
            store.lock_salon(salon_id, conn)
        if not store.deactivate_role(user_id, salon_id, role_row.id, conn=conn):
            raise NotFound("Assignment not found.")
        if role is SalonRoleEnum.owner and store.count_active_role_holders(salon_id, role_row.id, conn=conn) == 0:
            raise HTTPException(
                status_code=400,
                detail={"code": "last_owner", "message": "Cannot remove the last owner of a salon."},
            )

    logger.info(
        "Role %s deactivated for user_id=%s in salon_id=%s by user_id=%s",
        role_row.name,
        user_id,
        salon_id,
        current_user.id,
    )
    return Response(status_code=204)
