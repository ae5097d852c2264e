"""
Permission & role administration controller.

Every route uses `Depends(require_permission(...))` for enforcement.
Controllers are THIN: they delegate to services and return schemas;
engine errors are mapped to HTTP by the app-level handler.
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from household_access.core.database import get_db
from household_access.rbac import catalog
from household_access.rbac.dependencies import get_audit_sink, get_resolver, require_permission
from household_access.rbac.resolver import AuthorizationResolver
from household_access.schemas import (
    AssignRoleRequest,
    CreateRoleRequest,
    GrantOut,
    MessageResponse,
    PermissionOut,
    RoleOut,
    UpdateRoleRequest,
    UserRolesOut,
)
from household_access.services import role_service
from household_access.services.audit import AuditSink

router = APIRouter(prefix="/api/admin/permissions", tags=["Permissions"])


# ── Catalog ──────────────────────────────────────────────────────────
@router.get("", response_model=dict[str, list[PermissionOut]])
async def list_permissions(
    _: uuid.UUID = Depends(require_permission("roles.view")),
    db: AsyncSession = Depends(get_db),
):
    """All permissions grouped by category."""
    grouped = await role_service.list_permissions_by_category(db)
    return {
        category: [PermissionOut.model_validate(p) for p in perms]
        for category, perms in grouped.items()
    }


@router.post("/initialize", response_model=MessageResponse)
async def initialize_permissions(
    _: uuid.UUID = Depends(require_permission("system.configure")),
    db: AsyncSession = Depends(get_db),
):
    await catalog.initialize_catalog(db)
    return MessageResponse(detail="Default permissions and roles initialized successfully")


# ── Roles ────────────────────────────────────────────────────────────
@router.get("/roles", response_model=list[RoleOut])
async def list_roles(
    _: uuid.UUID = Depends(require_permission("roles.view")),
    db: AsyncSession = Depends(get_db),
):
    roles = await role_service.list_roles(db)
    return [
        RoleOut.model_validate(role).model_copy(update={"user_count": count})
        for role, count in roles
    ]


@router.post("/roles", response_model=RoleOut, status_code=201)
async def create_role(
    body: CreateRoleRequest,
    actor_id: uuid.UUID = Depends(require_permission("roles.create")),
    db: AsyncSession = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    role = await role_service.create_role(
        name=body.name,
        description=body.description,
        permission_ids=body.permission_ids,
        actor_id=actor_id,
        db=db,
        audit_sink=audit_sink,
    )
    return RoleOut.model_validate(role)


@router.put("/roles/{role_id}", response_model=RoleOut)
async def update_role(
    role_id: uuid.UUID,
    body: UpdateRoleRequest,
    actor_id: uuid.UUID = Depends(require_permission("roles.update")),
    db: AsyncSession = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    role = await role_service.update_role(
        role_id,
        actor_id,
        db,
        name=body.name,
        description=body.description,
        permission_ids=body.permission_ids,
        audit_sink=audit_sink,
    )
    return RoleOut.model_validate(role)


@router.delete("/roles/{role_id}", response_model=MessageResponse)
async def delete_role(
    role_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(require_permission("roles.delete")),
    db: AsyncSession = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    await role_service.delete_role(role_id, actor_id, db, audit_sink=audit_sink)
    return MessageResponse(detail="Role deleted successfully")


# ── User roles ───────────────────────────────────────────────────────
@router.get("/users/{user_id}/roles", response_model=UserRolesOut)
async def get_user_roles(
    user_id: uuid.UUID,
    _: uuid.UUID = Depends(require_permission("users.view")),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    grants, permissions = await role_service.list_user_roles(user_id, resolver)
    return UserRolesOut(
        grants=[GrantOut.model_validate(g) for g in grants],
        permissions=sorted(permissions),
    )


@router.post("/users/{user_id}/roles", response_model=GrantOut, status_code=201)
async def assign_user_role(
    user_id: uuid.UUID,
    body: AssignRoleRequest,
    actor_id: uuid.UUID = Depends(require_permission("roles.assign")),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    grant = await role_service.grant_role(
        user_id, body.role_id, actor_id, resolver, expires_at=body.expires_at
    )
    return GrantOut.model_validate(grant)


@router.delete("/users/{user_id}/roles/{role_id}", response_model=MessageResponse)
async def remove_user_role(
    user_id: uuid.UUID,
    role_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(require_permission("roles.assign")),
    resolver: AuthorizationResolver = Depends(get_resolver),
):
    revoked = await role_service.revoke_role(user_id, role_id, actor_id, resolver)
    return MessageResponse(detail=f"Role removed successfully ({revoked} grant(s) revoked)")
