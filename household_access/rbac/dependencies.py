"""
RBAC dependencies for the request layer.

`require_permission` is a *dependency factory*: call it with one or
more permission names and it returns a FastAPI dependency that will:

1. Decode the bearer token (via `get_current_user_token`).
2. Resolve the actor id.
3. Ask the resolver whether the actor holds EVERY required name.
4. Return 403 on failure, with NO details about which permissions
   exist.

Usage in a route:
    @router.get("/roles", dependencies=[Depends(require_permission("roles.view"))])
    async def list_roles(...): ...

Or inject the actor id:
    @router.post("/roles")
    async def create_role(actor_id: uuid.UUID = Depends(require_permission("roles.create"))): ...
"""

import logging
import uuid
from typing import Any

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from household_access.core.database import get_db
from household_access.core.security import get_current_user_token
from household_access.rbac.resolver import AuthorizationResolver
from household_access.services.audit import AuditSink, LoggingAuditSink
from household_access.services.impersonation_service import IMPERSONATION_SCOPE

logger = logging.getLogger("rbac")

_audit_sink: AuditSink = LoggingAuditSink()


def get_audit_sink() -> AuditSink:
    """Overridable in tests via `app.dependency_overrides`."""
    return _audit_sink


def get_resolver(
    db: AsyncSession = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit_sink),
) -> AuthorizationResolver:
    return AuthorizationResolver(db, audit_sink=audit_sink)


def _subject(token_payload: dict[str, Any]) -> uuid.UUID:
    raw = token_payload.get("sub") or token_payload.get("user_id")
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )


async def get_current_actor_id(
    token_payload: dict[str, Any] = Depends(get_current_user_token),
) -> uuid.UUID:
    """The identity the caller is acting as (the target while impersonating)."""
    return _subject(token_payload)


async def get_original_actor_id(
    token_payload: dict[str, Any] = Depends(get_current_user_token),
) -> uuid.UUID:
    """
    The human behind the request.

    Under an impersonation credential that is the administrator
    (`impersonator_id`), not the impersonated user.
    """
    impersonator = token_payload.get("impersonator_id")
    if impersonator:
        return _subject({"sub": impersonator})
    return _subject(token_payload)


class require_permission:
    """
    Dependency factory.

    Can be used as:
        Depends(require_permission("roles.view"))
        Depends(require_permission("roles.update", "roles.assign"))
    """

    def __init__(self, *permission_names: str):
        self.required = permission_names

    async def __call__(
        self,
        actor_id: uuid.UUID = Depends(get_current_actor_id),
        resolver: AuthorizationResolver = Depends(get_resolver),
    ) -> uuid.UUID:
        if not await resolver.has_all_permissions(actor_id, self.required):
            logger.warning(
                "Permission denied for user %s, required: %s",
                actor_id,
                ", ".join(self.required),
            )
            # Do NOT reveal which names are missing
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return actor_id


async def reject_impersonation_credential(
    token_payload: dict[str, Any] = Depends(get_current_user_token),
) -> None:
    """
    Refuse credentials issued by an impersonation start.

    An impersonated identity must not open sessions of its own; the
    administrator ends the current session first.
    """
    if token_payload.get("impersonator_id") or token_payload.get("scope") == IMPERSONATION_SCOPE:
        logger.warning(
            "Impersonation credential of admin %s refused on impersonation start",
            token_payload.get("impersonator_id"),
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed while impersonating",
        )
