"""HTTP surface: permission enforcement and engine-error mapping."""

from __future__ import annotations

import uuid

import pytest
from httpx import AsyncClient

from household_access.core.config import settings
from household_access.models import AccountType
from household_access.services import audit

pytestmark = pytest.mark.asyncio


@pytest.fixture
def user_with_role(session, make_user, get_role, resolver):
    async def _make(role_name: str | None, account_type: AccountType = AccountType.CUSTOMER):
        user = await make_user(account_type)
        if role_name is not None:
            await resolver.assign_role(user.id, (await get_role(role_name)).id, assigned_by=None)
            await session.commit()
        return user

    return _make


async def test_health(async_client: AsyncClient) -> None:
    response = await async_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_missing_or_bad_token_is_401(async_client: AsyncClient) -> None:
    assert (await async_client.get("/api/admin/permissions")).status_code == 401
    response = await async_client.get(
        "/api/admin/permissions", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert response.status_code == 401


async def test_denial_does_not_name_the_permission(catalog, async_client, user_with_role, auth_headers) -> None:
    agent = await user_with_role("Support Agent")

    response = await async_client.get("/api/admin/permissions", headers=auth_headers(agent))

    assert response.status_code == 403
    assert response.json() == {"detail": "Insufficient permissions"}


async def test_catalog_listing(catalog, async_client, user_with_role, auth_headers) -> None:
    admin = await user_with_role("Super Admin", AccountType.SUPER_ADMIN)

    response = await async_client.get("/api/admin/permissions", headers=auth_headers(admin))

    assert response.status_code == 200
    body = response.json()
    assert {p["name"] for p in body["role_management"]} >= {"roles.view", "roles.assign"}


async def test_role_lifecycle_over_http(catalog, async_client, user_with_role, auth_headers, audit_sink) -> None:
    admin = await user_with_role("Super Admin", AccountType.SUPER_ADMIN)
    user = await user_with_role(None)
    headers = auth_headers(admin)

    catalog_body = (await async_client.get("/api/admin/permissions", headers=headers)).json()
    booking_ids = [p["id"] for p in catalog_body["booking_management"]]

    created = await async_client.post(
        "/api/admin/permissions/roles",
        json={"name": "Dispatcher", "permission_ids": booking_ids},
        headers=headers,
    )
    assert created.status_code == 201, created.text
    role_id = created.json()["id"]

    duplicate = await async_client.post(
        "/api/admin/permissions/roles", json={"name": "Dispatcher"}, headers=headers
    )
    assert duplicate.status_code == 409
    assert duplicate.json() == {"detail": "Role name already exists"}

    assigned = await async_client.post(
        f"/api/admin/permissions/users/{user.id}/roles", json={"role_id": role_id}, headers=headers
    )
    assert assigned.status_code == 201, assigned.text

    roles = (await async_client.get("/api/admin/permissions/roles", headers=headers)).json()
    assert {r["name"]: r["user_count"] for r in roles}["Dispatcher"] == 1

    user_roles = await async_client.get(f"/api/admin/permissions/users/{user.id}/roles", headers=headers)
    assert user_roles.json()["permissions"] == ["bookings.cancel", "bookings.update", "bookings.view"]

    blocked = await async_client.delete(f"/api/admin/permissions/roles/{role_id}", headers=headers)
    assert blocked.status_code == 409

    removed = await async_client.delete(
        f"/api/admin/permissions/users/{user.id}/roles/{role_id}", headers=headers
    )
    assert removed.status_code == 200

    deleted = await async_client.delete(f"/api/admin/permissions/roles/{role_id}", headers=headers)
    assert deleted.status_code == 200
    assert audit.DELETE_ROLE in audit_sink.actions()


async def test_system_role_update_is_forbidden(catalog, async_client, user_with_role, auth_headers, get_role) -> None:
    admin = await user_with_role("Super Admin", AccountType.SUPER_ADMIN)
    agent_role = await get_role("Support Agent")

    response = await async_client.put(
        f"/api/admin/permissions/roles/{agent_role.id}", json={"name": "Agent"}, headers=auth_headers(admin)
    )

    assert response.status_code == 403
    assert response.json() == {"detail": "Cannot modify system roles"}


async def test_initialize_requires_system_configure(catalog, async_client, user_with_role, auth_headers) -> None:
    admin = await user_with_role("Admin", AccountType.ADMIN)
    super_admin = await user_with_role("Super Admin", AccountType.SUPER_ADMIN)

    denied = await async_client.post("/api/admin/permissions/initialize", headers=auth_headers(admin))
    allowed = await async_client.post("/api/admin/permissions/initialize", headers=auth_headers(super_admin))

    assert denied.status_code == 403
    assert allowed.status_code == 200


async def test_impersonation_round_trip(catalog, async_client, user_with_role, auth_headers) -> None:
    admin = await user_with_role("Super Admin", AccountType.SUPER_ADMIN)
    customer = await user_with_role(None)

    started = await async_client.post(
        "/api/admin/impersonation/start",
        json={"target_user_id": str(customer.id), "reason": "Customer cannot see bookings"},
        headers={**auth_headers(admin), "User-Agent": "support-console"},
    )
    assert started.status_code == 201, started.text
    body = started.json()
    assert body["session"]["target_user_id"] == str(customer.id)
    assert body["session"]["user_agent"] == "support-console"
    assert body["token_type"] == "bearer"
    impersonation_headers = {"Authorization": f"Bearer {body['access_token']}"}

    # acting as the customer: no admin rights
    denied = await async_client.get("/api/admin/permissions", headers=impersonation_headers)
    assert denied.status_code == 403

    # management routes resolve the human behind the credential
    status = await async_client.get("/api/admin/impersonation/status", headers=impersonation_headers)
    assert status.json()["is_impersonating"] is True
    assert status.json()["session"]["admin_id"] == str(admin.id)

    ended = await async_client.post("/api/admin/impersonation/end", headers=impersonation_headers)
    assert ended.status_code == 200
    assert ended.json()["session"]["is_active"] is False

    status = await async_client.get("/api/admin/impersonation/status", headers=auth_headers(admin))
    assert status.json() == {"is_impersonating": False, "session": None}

    again = await async_client.post("/api/admin/impersonation/end", headers=auth_headers(admin))
    assert again.status_code == 404


async def test_impersonation_errors_map_to_status_codes(catalog, async_client, user_with_role, auth_headers) -> None:
    admin = await user_with_role("Super Admin", AccountType.SUPER_ADMIN)
    headers = auth_headers(admin)

    self_start = await async_client.post(
        "/api/admin/impersonation/start",
        json={"target_user_id": str(admin.id), "reason": "Why not"},
        headers=headers,
    )
    assert self_start.status_code == 403
    assert self_start.json() == {"detail": "Cannot impersonate yourself"}

    missing_reason = await async_client.post(
        "/api/admin/impersonation/start",
        json={"target_user_id": str(uuid.uuid4())},
        headers=headers,
    )
    assert missing_reason.status_code == 400

    unknown = await async_client.post(
        "/api/admin/impersonation/start",
        json={"target_user_id": str(uuid.uuid4()), "reason": "Ticket"},
        headers=headers,
    )
    assert unknown.status_code == 404


async def test_start_requires_impersonate_permission(catalog, async_client, user_with_role, auth_headers) -> None:
    admin = await user_with_role("Admin", AccountType.ADMIN)
    customer = await user_with_role(None)

    response = await async_client.post(
        "/api/admin/impersonation/start",
        json={"target_user_id": str(customer.id), "reason": "Ticket"},
        headers=auth_headers(admin),
    )

    assert response.status_code == 403


async def test_oversight_listings(catalog, async_client, user_with_role, auth_headers) -> None:
    admin = await user_with_role("Super Admin", AccountType.SUPER_ADMIN)
    auditor = await user_with_role("Read Only")
    customer = await user_with_role(None)

    await async_client.post(
        "/api/admin/impersonation/start",
        json={"target_user_id": str(customer.id), "reason": "Ticket"},
        headers=auth_headers(admin),
    )

    active = await async_client.get("/api/admin/impersonation/active", headers=auth_headers(auditor))
    assert [s["target_user_id"] for s in active.json()] == [str(customer.id)]

    history = await async_client.get(
        "/api/admin/impersonation/history",
        params={"admin_id": str(admin.id), "page_size": 10},
        headers=auth_headers(auditor),
    )
    assert history.status_code == 200
    assert history.json()["total"] == 1
    assert history.json()["pages"] == 1

    denied = await async_client.get("/api/admin/impersonation/active", headers=auth_headers(customer))
    assert denied.status_code == 403


async def test_impersonation_credential_cannot_start_another_session(
    catalog, async_client, user_with_role, auth_headers
) -> None:
    admin = await user_with_role("Super Admin", AccountType.SUPER_ADMIN)
    other_super_admin = await user_with_role("Super Admin", AccountType.SUPER_ADMIN)
    customer = await user_with_role(None)

    started = await async_client.post(
        "/api/admin/impersonation/start",
        json={"target_user_id": str(other_super_admin.id), "reason": "Escalated ticket"},
        headers=auth_headers(admin),
    )
    assert started.status_code == 201, started.text
    impersonation_headers = {"Authorization": f"Bearer {started.json()['access_token']}"}

    nested = await async_client.post(
        "/api/admin/impersonation/start",
        json={"target_user_id": str(customer.id), "reason": "Chained"},
        headers=impersonation_headers,
    )

    assert nested.status_code == 403
    assert nested.json() == {"detail": "Not allowed while impersonating"}
    active = await async_client.get("/api/admin/impersonation/active", headers=auth_headers(admin))
    assert [(s["admin_id"], s["target_user_id"]) for s in active.json()] == [
        (str(admin.id), str(other_super_admin.id))
    ]


async def test_history_page_size_defaults_to_setting(
    catalog, async_client, user_with_role, auth_headers, monkeypatch
) -> None:
    monkeypatch.setattr(settings, "HISTORY_PAGE_SIZE", 2)
    admin = await user_with_role("Super Admin", AccountType.SUPER_ADMIN)
    customers = [await user_with_role(None) for _ in range(3)]
    for customer in customers:
        await async_client.post(
            "/api/admin/impersonation/start",
            json={"target_user_id": str(customer.id), "reason": "Ticket"},
            headers=auth_headers(admin),
        )

    history = await async_client.get("/api/admin/impersonation/history", headers=auth_headers(admin))

    body = history.json()
    assert body["page_size"] == 2
    assert body["total"] == 3
    assert len(body["items"]) == 2
    assert body["pages"] == 2
