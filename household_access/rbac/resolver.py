"""
Authorization resolver, the heart of permission enforcement.

Answers two questions for a user:

1. `has_permission(user_id, name, context)`: does ANY effective grant
   reach a role-permission row for `name` that is unconditioned, or
   whose conditions are all satisfied by `context`?
2. `get_user_permissions(user_id, context)`: every name for which (1)
   is true.

A grant is *effective* when `is_active` and (`expires_at` is NULL or in
the future).  Expiry is a wall-clock comparison at read time; nothing
sweeps expired rows.

Each check is a single SELECT (one consistent snapshot, no locks).
Checks are FAIL-CLOSED: any store error or malformed condition data is
logged and answered with False.  Nothing raises past this boundary.

Grant mutations (`assign_role`, `remove_role`) live here as well since
they are the only writers of the rows the checks read.
"""

import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from household_access.core.database import store_guard
from household_access.core.errors import MalformedConditionError
from household_access.models.base import utcnow
from household_access.models.grant import UserRole
from household_access.models.permission import Permission
from household_access.models.role import RolePermission
from household_access.rbac.conditions import conditions_met
from household_access.services import audit
from household_access.services.audit import AuditEvent, AuditSink, LoggingAuditSink

logger = logging.getLogger("rbac")


def effective_grant_clause(now: datetime):
    """SQL predicate for grants that confer permissions at `now`."""
    return and_(
        UserRole.is_active == True,  # noqa: E712
        or_(UserRole.expires_at.is_(None), UserRole.expires_at > now),
    )


class AuthorizationResolver:
    """
    Request-scoped resolver bound to one async session.

    `clock` is injectable so expiry can be tested deterministically.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.clock = clock

    # ── Reads ────────────────────────────────────────────────────────
    def _reachable_rows(self, user_id: uuid.UUID) -> Select:
        """(permission name, conditions) for every row under an effective grant."""
        return (
            select(Permission.name, RolePermission.conditions)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .join(UserRole, UserRole.role_id == RolePermission.role_id)
            .where(
                UserRole.user_id == user_id,
                effective_grant_clause(self.clock()),
            )
        )

    def _row_applies(
        self,
        user_id: uuid.UUID,
        permission_name: str,
        conditions: Any,
        context: Mapping[str, Any] | None,
    ) -> bool:
        """A malformed row is denied on its own; sibling rows still count."""
        try:
            return conditions_met(conditions, context)
        except MalformedConditionError:
            logger.error(
                "Ignoring malformed conditions on %s for user %s: %r",
                permission_name,
                user_id,
                conditions,
            )
            return False

    async def has_permission(
        self,
        user_id: uuid.UUID,
        permission_name: str,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        try:
            stmt = self._reachable_rows(user_id).where(Permission.name == permission_name)
            rows = (await self.db.execute(stmt)).all()
            # OR across roles: any satisfied row permits
            return any(
                self._row_applies(user_id, name, conditions, context)
                for name, conditions in rows
            )
        except Exception:
            logger.exception(
                "Permission check failed for user %s on %s, denying",
                user_id,
                permission_name,
            )
            return False

    async def get_user_permissions(
        self,
        user_id: uuid.UUID,
        context: Mapping[str, Any] | None = None,
    ) -> set[str]:
        """Every permission `has_permission` would grant under `context`.

        Fail-closed like the single check: an error yields an empty set.
        """
        try:
            rows = (await self.db.execute(self._reachable_rows(user_id))).all()
            return {
                name
                for name, conditions in rows
                if self._row_applies(user_id, name, conditions, context)
            }
        except Exception:
            logger.exception("Permission listing failed for user %s, returning none", user_id)
            return set()

    async def has_any_permission(
        self,
        user_id: uuid.UUID,
        permission_names: Iterable[str],
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        for name in permission_names:
            if await self.has_permission(user_id, name, context):
                return True
        return False

    async def has_all_permissions(
        self,
        user_id: uuid.UUID,
        permission_names: Iterable[str],
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        names = list(permission_names)
        if not names:
            return False
        for name in names:
            if not await self.has_permission(user_id, name, context):
                return False
        return True

    async def get_effective_grants(self, user_id: uuid.UUID) -> list[UserRole]:
        stmt = (
            select(UserRole)
            .where(UserRole.user_id == user_id, effective_grant_clause(self.clock()))
            .order_by(UserRole.assigned_at)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_active_grant(self, user_id: uuid.UUID, role_id: uuid.UUID) -> UserRole | None:
        """First `is_active` grant for (user, role), expired or not."""
        stmt = select(UserRole).where(
            UserRole.user_id == user_id,
            UserRole.role_id == role_id,
            UserRole.is_active == True,  # noqa: E712
        )
        return (await self.db.execute(stmt)).scalars().first()

    # ── Writes ───────────────────────────────────────────────────────
    async def assign_role(
        self,
        user_id: uuid.UUID,
        role_id: uuid.UUID,
        assigned_by: uuid.UUID | None,
        expires_at: datetime | None = None,
    ) -> UserRole:
        """
        Append a new grant.

        Pure append: no dedupe against existing active grants for the
        same (user, role).  Callers that need the guard use
        `role_service.grant_role`.
        """
        async with store_guard(self.db, "assign_role"):
            grant = UserRole(
                user_id=user_id,
                role_id=role_id,
                assigned_by=assigned_by,
                assigned_at=self.clock(),
                expires_at=expires_at,
                is_active=True,
            )
            self.db.add(grant)
            await self.db.flush()

        audit.emit(
            self.audit_sink,
            AuditEvent(
                actor_id=assigned_by,
                action=audit.ASSIGN_ROLE,
                entity_type="user_role",
                entity_id=grant.id,
                target_id=user_id,
                details={
                    "role_id": str(role_id),
                    "expires_at": expires_at.isoformat() if expires_at else None,
                },
            ),
        )
        return grant

    async def remove_role(
        self,
        user_id: uuid.UUID,
        role_id: uuid.UUID,
        removed_by: uuid.UUID | None = None,
    ) -> int:
        """
        Soft-revoke every ACTIVE grant row for (user, role).

        Returns how many rows flipped from active to inactive; rows that
        were already revoked are left as they are and not counted.  Rows
        are kept.
        """
        async with store_guard(self.db, "remove_role"):
            stmt = (
                update(UserRole)
                .where(
                    UserRole.user_id == user_id,
                    UserRole.role_id == role_id,
                    UserRole.is_active == True,  # noqa: E712
                )
                .values(is_active=False)
                .execution_options(synchronize_session="fetch")
            )
            result = await self.db.execute(stmt)
            await self.db.flush()

        audit.emit(
            self.audit_sink,
            AuditEvent(
                actor_id=removed_by,
                action=audit.REVOKE_ROLE,
                entity_type="user_role",
                target_id=user_id,
                details={"role_id": str(role_id), "revoked": result.rowcount},
            ),
        )
        return result.rowcount
