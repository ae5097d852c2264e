"""
Role registry service: custom roles and user-role administration.

Handles:
- Listing the catalog (grouped by category) and active roles
- Creating / updating / deleting CUSTOM roles (system roles are owned
  by catalog initialization and refuse mutation)
- Guarded grant / revoke of roles on users

Grant and revoke delegate the actual row writes to the resolver so the
audit trail is emitted from one place.
"""

import uuid
from collections import defaultdict
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from household_access.core.database import store_guard
from household_access.core.errors import ConflictError, NotFoundError, PrivilegeError, ValidationError
from household_access.models.grant import UserRole
from household_access.models.permission import Permission
from household_access.models.role import Role, RolePermission
from household_access.models.user import User
from household_access.rbac.catalog import ELEVATED_ROLE_NAMES
from household_access.rbac.resolver import AuthorizationResolver
from household_access.services import audit
from household_access.services.audit import AuditEvent, AuditSink, LoggingAuditSink


# ── Helpers ──────────────────────────────────────────────────────────

async def _get_role(role_id: uuid.UUID, db: AsyncSession) -> Role:
    role = await db.get(Role, role_id)
    if role is None:
        raise NotFoundError("Role not found")
    return role


async def _get_user(user_id: uuid.UUID, db: AsyncSession) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def _ensure_name_free(name: str, db: AsyncSession, *, exclude: uuid.UUID | None = None) -> None:
    stmt = select(Role.id).where(Role.name == name)
    if exclude is not None:
        stmt = stmt.where(Role.id != exclude)
    if (await db.execute(stmt)).first() is not None:
        raise ConflictError("Role name already exists")


async def _load_permissions(permission_ids: list[uuid.UUID], db: AsyncSession) -> list[Permission]:
    unique_ids = list(dict.fromkeys(permission_ids))
    if not unique_ids:
        return []
    result = await db.execute(select(Permission).where(Permission.id.in_(unique_ids)))
    found = {p.id: p for p in result.scalars().all()}
    missing = [pid for pid in unique_ids if pid not in found]
    if missing:
        raise NotFoundError(f"Unknown permission id(s): {', '.join(str(m) for m in missing)}")
    return [found[pid] for pid in unique_ids]


async def _count_active_grants(role_id: uuid.UUID, db: AsyncSession) -> int:
    stmt = select(func.count(UserRole.id)).where(
        UserRole.role_id == role_id,
        UserRole.is_active == True,  # noqa: E712
    )
    return (await db.execute(stmt)).scalar_one()


# ── Catalog / registry reads ─────────────────────────────────────────

async def list_permissions_by_category(db: AsyncSession) -> dict[str, list[Permission]]:
    stmt = select(Permission).order_by(Permission.category, Permission.name)
    grouped: dict[str, list[Permission]] = defaultdict(list)
    for perm in (await db.execute(stmt)).scalars().all():
        grouped[perm.category].append(perm)
    return dict(grouped)


async def list_roles(db: AsyncSession) -> list[tuple[Role, int]]:
    """Active roles (alphabetical) with their active-grant counts."""
    counts = (
        select(UserRole.role_id, func.count(UserRole.id).label("grant_count"))
        .where(UserRole.is_active == True)  # noqa: E712
        .group_by(UserRole.role_id)
        .subquery()
    )
    stmt = (
        select(Role, func.coalesce(counts.c.grant_count, 0))
        .outerjoin(counts, counts.c.role_id == Role.id)
        .where(Role.is_active == True)  # noqa: E712
        .order_by(Role.name)
    )
    return [(role, count) for role, count in (await db.execute(stmt)).all()]


# ── Custom role CRUD ─────────────────────────────────────────────────

async def create_role(
    name: str,
    description: str | None,
    permission_ids: list[uuid.UUID],
    actor_id: uuid.UUID,
    db: AsyncSession,
    audit_sink: AuditSink | None = None,
) -> Role:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Role name is required")

    async with store_guard(db, "create_role"):
        await _ensure_name_free(name, db)
        permissions = await _load_permissions(permission_ids, db)
        role = Role(
            name=name,
            description=description,
            is_system=False,
            role_permissions=[RolePermission(permission_id=p.id, permission=p) for p in permissions],
        )
        db.add(role)
        await db.flush()

    audit.emit(
        audit_sink or LoggingAuditSink(),
        AuditEvent(
            actor_id=actor_id,
            action=audit.CREATE_ROLE,
            entity_type="role",
            entity_id=role.id,
            details={"name": name, "permissions": [p.name for p in permissions]},
        ),
    )
    return role


async def update_role(
    role_id: uuid.UUID,
    actor_id: uuid.UUID,
    db: AsyncSession,
    *,
    name: str | None = None,
    description: str | None = None,
    permission_ids: list[uuid.UUID] | None = None,
    audit_sink: AuditSink | None = None,
) -> Role:
    """Rename / redescribe a custom role; a given permission list replaces the bundle."""
    role = await _get_role(role_id, db)
    if role.is_system:
        raise PrivilegeError("Cannot modify system roles")

    async with store_guard(db, "update_role"):
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Role name cannot be blank")
            if name != role.name:
                await _ensure_name_free(name, db, exclude=role.id)
                role.name = name
        if description is not None:
            role.description = description
        if permission_ids is not None:
            permissions = await _load_permissions(permission_ids, db)
            role.role_permissions.clear()
            role.role_permissions.extend(
                RolePermission(permission_id=p.id, permission=p) for p in permissions
            )
        await db.flush()

    audit.emit(
        audit_sink or LoggingAuditSink(),
        AuditEvent(
            actor_id=actor_id,
            action=audit.UPDATE_ROLE,
            entity_type="role",
            entity_id=role.id,
            details={"name": role.name, "permissions": role.permission_names},
        ),
    )
    return role


async def delete_role(
    role_id: uuid.UUID,
    actor_id: uuid.UUID,
    db: AsyncSession,
    audit_sink: AuditSink | None = None,
) -> None:
    role = await _get_role(role_id, db)
    if role.is_system:
        raise PrivilegeError("Cannot delete system roles")
    if await _count_active_grants(role.id, db):
        raise ConflictError("Cannot delete role that is assigned to users")

    async with store_guard(db, "delete_role"):
        await db.delete(role)
        await db.flush()

    audit.emit(
        audit_sink or LoggingAuditSink(),
        AuditEvent(
            actor_id=actor_id,
            action=audit.DELETE_ROLE,
            entity_type="role",
            entity_id=role_id,
            details={"name": role.name},
        ),
    )


# ── User ↔ role administration ───────────────────────────────────────

async def grant_role(
    user_id: uuid.UUID,
    role_id: uuid.UUID,
    actor_id: uuid.UUID,
    resolver: AuthorizationResolver,
    expires_at: datetime | None = None,
) -> UserRole:
    """Existence + no-duplicate guard, then `resolver.assign_role`."""
    await _get_user(user_id, resolver.db)
    await _get_role(role_id, resolver.db)
    if await resolver.get_active_grant(user_id, role_id) is not None:
        raise ConflictError("User already has this role")
    return await resolver.assign_role(user_id, role_id, actor_id, expires_at)


async def revoke_role(
    user_id: uuid.UUID,
    role_id: uuid.UUID,
    actor_id: uuid.UUID,
    resolver: AuthorizationResolver,
) -> int:
    role = await _get_role(role_id, resolver.db)
    if user_id == actor_id and role.name in ELEVATED_ROLE_NAMES:
        raise PrivilegeError("Cannot remove your own admin role")
    return await resolver.remove_role(user_id, role_id, removed_by=actor_id)


async def list_user_roles(
    user_id: uuid.UUID,
    resolver: AuthorizationResolver,
) -> tuple[list[UserRole], set[str]]:
    await _get_user(user_id, resolver.db)
    grants = await resolver.get_effective_grants(user_id)
    permissions = await resolver.get_user_permissions(user_id)
    return grants, permissions
