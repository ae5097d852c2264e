"""
Permission catalog & system-role seeding.

Run on every startup (and on demand from the admin API).  It is
CONVERGENT, not additive: any number of runs, in any order, even
concurrently, leave the catalog and every system role's bundle in the
same state:

    • canonical permissions are upserted by name, never deleted
    • system roles are upserted by name and their bundle REPLACED
    • custom (non-system) roles are never touched

Usage:
    python -m household_access.rbac.catalog
"""

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from household_access.core.database import store_guard
from household_access.core.errors import ConflictError
from household_access.models.permission import Permission
from household_access.models.role import Role, RolePermission

logger = logging.getLogger("catalog")


def _perm(name: str, description: str, category: str) -> dict[str, str]:
    resource, action = name.split(".", 1)
    return {
        "name": name,
        "resource": resource,
        "action": action,
        "description": description,
        "category": category,
    }


# ────────────────────────────────────────────────────────────────────
# 1.  CANONICAL PERMISSION LIST
# ────────────────────────────────────────────────────────────────────
CROSS_ADMIN_IMPERSONATION = "users.impersonate_admins"

PERMISSIONS: list[dict[str, str]] = [
    # User management
    _perm("users.view", "View user information", "user_management"),
    _perm("users.create", "Create new users", "user_management"),
    _perm("users.update", "Update user information", "user_management"),
    _perm("users.delete", "Delete users", "user_management"),
    _perm("users.suspend", "Suspend user accounts", "user_management"),
    _perm("users.impersonate", "Impersonate other users", "user_management"),
    _perm(CROSS_ADMIN_IMPERSONATION, "Impersonate administrators", "user_management"),
    # Role management
    _perm("roles.view", "View roles and permissions", "role_management"),
    _perm("roles.create", "Create new roles", "role_management"),
    _perm("roles.update", "Update roles and permissions", "role_management"),
    _perm("roles.delete", "Delete roles", "role_management"),
    _perm("roles.assign", "Assign roles to users", "role_management"),
    # Subscriptions
    _perm("subscriptions.view", "View subscription information", "subscription_management"),
    _perm("subscriptions.update", "Update subscriptions", "subscription_management"),
    _perm("subscriptions.billing", "Manage billing and payments", "subscription_management"),
    # Bookings
    _perm("bookings.view", "View booking information", "booking_management"),
    _perm("bookings.update", "Update booking status", "booking_management"),
    _perm("bookings.cancel", "Cancel bookings", "booking_management"),
    # Communication
    _perm("communications.view", "View communications", "communication"),
    _perm("communications.send", "Send messages and emails", "communication"),
    _perm("communications.broadcast", "Send broadcast messages", "communication"),
    # System
    _perm("system.monitor", "Monitor system health", "system_management"),
    _perm("system.configure", "Configure system settings", "system_management"),
    _perm("system.backup", "Manage system backups", "system_management"),
    # Audit & reporting
    _perm("audit.view", "View audit logs", "audit_reporting"),
    _perm("reports.view", "View reports", "audit_reporting"),
    _perm("reports.export", "Export data and reports", "audit_reporting"),
    # Dashboard
    _perm("dashboard.view", "View admin dashboard", "dashboard"),
    _perm("dashboard.customize", "Customize dashboard layout", "dashboard"),
]

# ────────────────────────────────────────────────────────────────────
# 2.  SYSTEM ROLE → PERMISSION MAPPING
#
#     Only Super Admin may impersonate, and only Super Admin may
#     impersonate other administrators.
# ────────────────────────────────────────────────────────────────────
ROLE_PERMISSIONS: dict[str, dict] = {
    "Super Admin": {
        "description": "Full system access with all permissions",
        "permissions": [p["name"] for p in PERMISSIONS],
    },
    "Admin": {
        "description": "Administrative access with most permissions",
        "permissions": [
            "users.view", "users.create", "users.update", "users.suspend",
            "subscriptions.view", "subscriptions.update", "subscriptions.billing",
            "bookings.view", "bookings.update", "bookings.cancel",
            "communications.view", "communications.send",
            "audit.view", "reports.view", "reports.export",
            "dashboard.view", "dashboard.customize",
        ],
    },
    "Support Manager": {
        "description": "Customer support management access",
        "permissions": [
            "users.view", "users.update",
            "subscriptions.view", "subscriptions.update",
            "bookings.view", "bookings.update",
            "communications.view", "communications.send",
            "dashboard.view",
        ],
    },
    "Support Agent": {
        "description": "Basic customer support access",
        "permissions": [
            "users.view",
            "subscriptions.view",
            "bookings.view", "bookings.update",
            "communications.view", "communications.send",
            "dashboard.view",
        ],
    },
    "Billing Manager": {
        "description": "Billing and subscription management access",
        "permissions": [
            "users.view",
            "subscriptions.view", "subscriptions.update", "subscriptions.billing",
            "reports.view", "reports.export",
            "dashboard.view",
        ],
    },
    "Read Only": {
        "description": "View-only access to most resources",
        "permissions": [
            "users.view",
            "subscriptions.view",
            "bookings.view",
            "communications.view",
            "audit.view", "reports.view",
            "dashboard.view",
        ],
    },
}

# Holders of these roles count as administrators for impersonation.
ELEVATED_ROLE_NAMES: frozenset[str] = frozenset({"Super Admin", "Admin"})

MAX_ATTEMPTS = 3


# ────────────────────────────────────────────────────────────────────
# 3.  INITIALIZATION (convergent)
# ────────────────────────────────────────────────────────────────────
async def _upsert_permissions(session: AsyncSession) -> dict[str, Permission]:
    names = [p["name"] for p in PERMISSIONS]
    result = await session.execute(select(Permission).where(Permission.name.in_(names)))
    by_name: dict[str, Permission] = {p.name: p for p in result.scalars().all()}

    for pdata in PERMISSIONS:
        perm = by_name.get(pdata["name"])
        if perm is None:
            perm = Permission(is_system=True, **pdata)
            session.add(perm)
            by_name[perm.name] = perm
        else:
            perm.resource = pdata["resource"]
            perm.action = pdata["action"]
            perm.description = pdata["description"]
            perm.category = pdata["category"]
            perm.is_system = True

    await session.flush()  # ensure IDs are available
    return by_name


async def _sync_system_role(
    session: AsyncSession,
    name: str,
    description: str,
    permissions: list[Permission],
) -> None:
    # Row lock serializes concurrent bundle replacement for this role
    stmt = select(Role).where(Role.name == name).with_for_update()
    role = (await session.execute(stmt)).scalar_one_or_none()

    bundle = [RolePermission(permission_id=p.id, permission=p) for p in permissions]
    if role is None:
        session.add(
            Role(name=name, description=description, is_system=True, role_permissions=bundle)
        )
        return

    role.description = description
    role.is_system = True
    role.role_permissions.clear()  # delete-orphan removes the old rows
    role.role_permissions.extend(bundle)


async def _apply_catalog(session: AsyncSession) -> None:
    by_name = await _upsert_permissions(session)
    for role_name, role_data in ROLE_PERMISSIONS.items():
        perms = [by_name[code] for code in role_data["permissions"]]
        await _sync_system_role(session, role_name, role_data["description"], perms)
    await session.flush()


async def initialize_catalog(session: AsyncSession) -> None:
    """Upsert the canonical catalog and system roles, then commit.

    A unique-name race with a concurrent initializer is retried from a
    fresh read; the second pass finds the other writer's rows and
    updates them instead.
    """
    async with store_guard(session, "catalog initialization"):
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                await _apply_catalog(session)
                await session.commit()
                break
            except IntegrityError:
                await session.rollback()
                if attempt == MAX_ATTEMPTS:
                    raise ConflictError("Catalog initialization is contended, retry later")
                logger.warning("Catalog initialization raced (attempt %d), retrying", attempt)

    logger.info(
        "Catalog initialized: %d permissions, %d system roles",
        len(PERMISSIONS),
        len(ROLE_PERMISSIONS),
    )


# ────────────────────────────────────────────────────────────────────
# 4.  CLI entrypoint:  python -m household_access.rbac.catalog
# ────────────────────────────────────────────────────────────────────
async def main() -> None:
    from household_access.core.database import AsyncSessionLocal, engine

    async with AsyncSessionLocal() as session:
        await initialize_catalog(session)
    await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
