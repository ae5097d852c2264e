"""Authorization resolver: effective grants, conditions, fail-closed."""

from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from household_access.models import GrantStatus, Permission, UserRole
from household_access.rbac.catalog import PERMISSIONS, ROLE_PERMISSIONS
from household_access.services import audit

pytestmark = pytest.mark.asyncio

CATALOG_NAMES = [p["name"] for p in PERMISSIONS]


async def test_support_agent_grant_then_revoke(catalog, resolver, make_user, get_role) -> None:
    user = await make_user()
    agent = await get_role("Support Agent")

    await resolver.assign_role(user.id, agent.id, assigned_by=None)
    assert await resolver.has_permission(user.id, "users.view")

    revoked = await resolver.remove_role(user.id, agent.id)
    assert revoked == 1
    assert not await resolver.has_permission(user.id, "users.view")


async def test_user_without_grants_has_nothing(catalog, resolver, make_user) -> None:
    user = await make_user()

    assert not await resolver.has_permission(user.id, "users.view")
    assert await resolver.get_user_permissions(user.id) == set()


async def test_unknown_permission_is_denied(catalog, resolver, make_user, get_role) -> None:
    user = await make_user()
    await resolver.assign_role(user.id, (await get_role("Super Admin")).id, assigned_by=None)

    assert not await resolver.has_permission(user.id, "users.teleport")


async def test_expired_grant_confers_nothing(catalog, resolver, clock, make_user, get_role) -> None:
    user = await make_user()
    billing = await get_role("Billing Manager")
    grant = await resolver.assign_role(
        user.id, billing.id, assigned_by=None, expires_at=clock.now.replace(year=2025)
    )

    assert grant.is_active is True
    assert grant.status_at(clock.now) is GrantStatus.EXPIRED
    assert not await resolver.has_permission(user.id, "subscriptions.billing")
    assert await resolver.get_effective_grants(user.id) == []


async def test_grant_lapses_when_clock_passes_expiry(catalog, resolver, clock, make_user, get_role) -> None:
    user = await make_user()
    billing = await get_role("Billing Manager")
    await resolver.assign_role(
        user.id, billing.id, assigned_by=None, expires_at=clock.now.replace(hour=13)
    )
    assert await resolver.has_permission(user.id, "subscriptions.billing")

    clock.advance(hours=2)

    assert not await resolver.has_permission(user.id, "subscriptions.billing")


async def test_remove_role_revokes_every_active_duplicate(catalog, session, resolver, make_user, get_role) -> None:
    user = await make_user()
    agent = await get_role("Support Agent")
    await resolver.assign_role(user.id, agent.id, assigned_by=None)
    await resolver.assign_role(user.id, agent.id, assigned_by=None)

    assert await resolver.remove_role(user.id, agent.id) == 2
    assert await resolver.remove_role(user.id, agent.id) == 0

    rows = (await session.execute(select(UserRole).where(UserRole.user_id == user.id))).scalars().all()
    assert len(rows) == 2
    assert all(row.is_active is False for row in rows)


async def test_revocation_keeps_permissions_from_other_roles(catalog, resolver, make_user, get_role) -> None:
    user = await make_user()
    agent = await get_role("Support Agent")
    read_only = await get_role("Read Only")
    await resolver.assign_role(user.id, agent.id, assigned_by=None)
    await resolver.assign_role(user.id, read_only.id, assigned_by=None)

    await resolver.remove_role(user.id, agent.id)

    assert await resolver.has_permission(user.id, "users.view")  # also in Read Only
    assert not await resolver.has_permission(user.id, "bookings.update")  # only in Support Agent


async def test_conditioned_row_requires_matching_context(catalog, resolver, make_user, make_role) -> None:
    user = await make_user()
    role = await make_role("North Dispatch", [("bookings.update", {"region": "north"})])
    await resolver.assign_role(user.id, role.id, assigned_by=None)

    assert await resolver.has_permission(user.id, "bookings.update", {"region": "north"})
    assert not await resolver.has_permission(user.id, "bookings.update", {"region": "south"})
    assert not await resolver.has_permission(user.id, "bookings.update")


async def test_any_satisfied_role_permits(catalog, resolver, make_user, make_role) -> None:
    user = await make_user()
    north = await make_role("North Dispatch", [("bookings.update", {"region": "north"})])
    south = await make_role("South Dispatch", [("bookings.update", {"region": "south"})])
    await resolver.assign_role(user.id, north.id, assigned_by=None)
    await resolver.assign_role(user.id, south.id, assigned_by=None)

    assert await resolver.has_permission(user.id, "bookings.update", {"region": "north"})
    assert await resolver.has_permission(user.id, "bookings.update", {"region": "south"})
    assert not await resolver.has_permission(user.id, "bookings.update", {"region": "east"})


async def test_malformed_conditions_deny_that_row_only(catalog, resolver, make_user, make_role) -> None:
    user = await make_user()
    broken = await make_role("Broken", [("reports.view", ["north"]), ("reports.export", {"a": {"b": 1}})])
    await resolver.assign_role(user.id, broken.id, assigned_by=None)

    assert not await resolver.has_permission(user.id, "reports.view", {"region": "north"})
    assert await resolver.get_user_permissions(user.id, {"region": "north"}) == set()

    fallback = await make_role("Fallback", [("reports.view", None)])
    await resolver.assign_role(user.id, fallback.id, assigned_by=None)

    assert await resolver.get_user_permissions(user.id, {"region": "north"}) == {"reports.view"}


async def test_store_failure_fails_closed(catalog, session, resolver, make_user, get_role, monkeypatch) -> None:
    user = await make_user()
    await resolver.assign_role(user.id, (await get_role("Super Admin")).id, assigned_by=None)

    async def broken_execute(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(session, "execute", broken_execute)

    assert not await resolver.has_permission(user.id, "users.view")
    assert await resolver.get_user_permissions(user.id) == set()
    assert not await resolver.has_all_permissions(user.id, ["users.view"])


@pytest.mark.parametrize("context", [None, {"region": "north"}, {"region": "south", "tier": 2}])
async def test_listing_matches_single_checks(catalog, resolver, make_user, make_role, get_role, context) -> None:
    user = await make_user()
    await resolver.assign_role(user.id, (await get_role("Support Agent")).id, assigned_by=None)
    custom = await make_role(
        "Regional Billing",
        [
            ("subscriptions.billing", {"region": "north"}),
            ("reports.export", {"region": "south", "tier": 2}),
            ("audit.view", {}),
        ],
    )
    await resolver.assign_role(user.id, custom.id, assigned_by=None)

    listed = await resolver.get_user_permissions(user.id, context)
    expected = {name for name in CATALOG_NAMES if await resolver.has_permission(user.id, name, context)}

    assert listed == expected
    assert set(ROLE_PERMISSIONS["Support Agent"]["permissions"]) <= listed
    assert "audit.view" in listed


async def test_any_and_all(catalog, resolver, make_user, get_role) -> None:
    user = await make_user()
    await resolver.assign_role(user.id, (await get_role("Read Only")).id, assigned_by=None)

    assert await resolver.has_any_permission(user.id, ["users.delete", "users.view"])
    assert not await resolver.has_any_permission(user.id, ["users.delete"])
    assert await resolver.has_all_permissions(user.id, ["users.view", "audit.view"])
    assert not await resolver.has_all_permissions(user.id, ["users.view", "users.delete"])
    assert not await resolver.has_all_permissions(user.id, [])


async def test_grant_mutations_are_audited(catalog, resolver, audit_sink, make_user, get_role) -> None:
    admin = await make_user()
    user = await make_user()
    agent = await get_role("Support Agent")

    grant = await resolver.assign_role(user.id, agent.id, assigned_by=admin.id)
    await resolver.remove_role(user.id, agent.id, removed_by=admin.id)

    assigned, revoked = audit_sink.events
    assert assigned.action == audit.ASSIGN_ROLE
    assert assigned.entity_id == grant.id
    assert assigned.actor_id == admin.id
    assert revoked.action == audit.REVOKE_ROLE
    assert revoked.target_id == user.id
    assert revoked.details["revoked"] == 1


async def test_failing_audit_sink_does_not_undo_the_grant(catalog, resolver, make_user, get_role) -> None:
    class ExplodingSink:
        def emit(self, event):
            raise RuntimeError("sink down")

    resolver.audit_sink = ExplodingSink()
    user = await make_user()

    await resolver.assign_role(user.id, (await get_role("Read Only")).id, assigned_by=None)

    assert await resolver.has_permission(user.id, "audit.view")


async def test_catalog_names_are_unique(catalog, session) -> None:
    names = (await session.execute(select(Permission.name))).scalars().all()
    assert len(names) == len(set(names)) == len(CATALOG_NAMES)
