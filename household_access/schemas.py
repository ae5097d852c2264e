"""
Pydantic schemas for request / response serialization.

Kept in a single file; split per domain when it grows.
Schemas are decoupled from SQLAlchemy models; ORM rows are read
through `from_attributes`.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ── Permissions ──────────────────────────────────────────────────────
class PermissionOut(BaseModel):
    id: uuid.UUID
    name: str
    resource: str
    action: str
    description: str | None = None
    category: str
    is_system: bool

    model_config = {"from_attributes": True}


class RolePermissionOut(BaseModel):
    permission: PermissionOut
    conditions: dict[str, Any] | None = None

    model_config = {"from_attributes": True}


# ── Roles ────────────────────────────────────────────────────────────
class RoleOut(BaseModel):
    id: uuid.UUID
    name: str
    description: str | None = None
    is_system: bool
    is_active: bool
    role_permissions: list[RolePermissionOut] = []
    user_count: int = 0

    model_config = {"from_attributes": True}


class CreateRoleRequest(BaseModel):
    name: str
    description: str | None = None
    permission_ids: list[uuid.UUID] = []


class UpdateRoleRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    permission_ids: list[uuid.UUID] | None = None


# ── Grants ───────────────────────────────────────────────────────────
class AssignRoleRequest(BaseModel):
    role_id: uuid.UUID
    expires_at: datetime | None = None


class GrantOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    role_id: uuid.UUID
    assigned_by: uuid.UUID | None = None
    assigned_at: datetime
    expires_at: datetime | None = None
    is_active: bool

    model_config = {"from_attributes": True}


class UserRolesOut(BaseModel):
    grants: list[GrantOut]
    permissions: list[str]


# ── Impersonation ────────────────────────────────────────────────────
class StartImpersonationRequest(BaseModel):
    target_user_id: uuid.UUID | None = None
    reason: str | None = Field(default=None, max_length=1000)


class ImpersonationSessionOut(BaseModel):
    id: uuid.UUID
    admin_id: uuid.UUID
    target_user_id: uuid.UUID
    reason: str
    ip_address: str | None = None
    user_agent: str | None = None
    started_at: datetime
    ended_at: datetime | None = None
    is_active: bool

    model_config = {"from_attributes": True}


class ImpersonationTokenOut(BaseModel):
    session: ImpersonationSessionOut
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class ImpersonationStatusOut(BaseModel):
    is_impersonating: bool
    session: ImpersonationSessionOut | None = None


class ImpersonationHistoryOut(BaseModel):
    items: list[ImpersonationSessionOut]
    total: int
    page: int
    page_size: int
    pages: int


# ── Generic ──────────────────────────────────────────────────────────
class MessageResponse(BaseModel):
    detail: str
