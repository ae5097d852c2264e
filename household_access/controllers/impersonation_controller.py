"""
Impersonation controller: start / end / inspect admin impersonation.

Starting requires `users.impersonate` and a full (non-impersonation)
credential; oversight listings require
`audit.view`.  Ending and status are keyed on the ORIGINAL actor, so
they work while the caller presents the impersonation credential.
"""

import uuid

from fastapi import APIRouter, Depends, Query, Request

from household_access.rbac.dependencies import (
    get_audit_sink,
    get_original_actor_id,
    get_resolver,
    reject_impersonation_credential,
    require_permission,
)
from household_access.rbac.resolver import AuthorizationResolver
from household_access.schemas import (
    ImpersonationHistoryOut,
    ImpersonationSessionOut,
    ImpersonationStatusOut,
    ImpersonationTokenOut,
    StartImpersonationRequest,
)
from household_access.services.audit import AuditSink
from household_access.services.impersonation_service import ImpersonationManager

router = APIRouter(prefix="/api/admin/impersonation", tags=["Impersonation"])


def get_impersonation_manager(
    resolver: AuthorizationResolver = Depends(get_resolver),
    audit_sink: AuditSink = Depends(get_audit_sink),
) -> ImpersonationManager:
    return ImpersonationManager(resolver.db, resolver=resolver, audit_sink=audit_sink)


@router.post("/start", response_model=ImpersonationTokenOut, status_code=201)
async def start_impersonation(
    body: StartImpersonationRequest,
    request: Request,
    _: None = Depends(reject_impersonation_credential),
    admin_id: uuid.UUID = Depends(require_permission("users.impersonate")),
    manager: ImpersonationManager = Depends(get_impersonation_manager),
):
    started = await manager.start(
        admin_id,
        body.target_user_id,
        body.reason,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return ImpersonationTokenOut(
        session=ImpersonationSessionOut.model_validate(started.session),
        access_token=started.credential,
        expires_in=started.expires_in,
    )


@router.post("/end", response_model=ImpersonationTokenOut)
async def end_impersonation(
    admin_id: uuid.UUID = Depends(get_original_actor_id),
    manager: ImpersonationManager = Depends(get_impersonation_manager),
):
    ended = await manager.end(admin_id)
    return ImpersonationTokenOut(
        session=ImpersonationSessionOut.model_validate(ended.session),
        access_token=ended.credential,
        expires_in=ended.expires_in,
    )


@router.get("/status", response_model=ImpersonationStatusOut)
async def impersonation_status(
    admin_id: uuid.UUID = Depends(get_original_actor_id),
    manager: ImpersonationManager = Depends(get_impersonation_manager),
):
    current = await manager.status(admin_id)
    return ImpersonationStatusOut(
        is_impersonating=current.is_impersonating,
        session=ImpersonationSessionOut.model_validate(current.session) if current.session else None,
    )


@router.get("/active", response_model=list[ImpersonationSessionOut])
async def list_active_sessions(
    _: uuid.UUID = Depends(require_permission("audit.view")),
    manager: ImpersonationManager = Depends(get_impersonation_manager),
):
    return [ImpersonationSessionOut.model_validate(s) for s in await manager.list_active()]


@router.get("/history", response_model=ImpersonationHistoryOut)
async def impersonation_history(
    _: uuid.UUID = Depends(require_permission("audit.view")),
    manager: ImpersonationManager = Depends(get_impersonation_manager),
    admin_id: uuid.UUID | None = Query(None),
    target_user_id: uuid.UUID | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int | None = Query(None, ge=1, le=200),
):
    result = await manager.list_history(
        admin_id=admin_id,
        target_user_id=target_user_id,
        page=page,
        page_size=page_size,
    )
    return ImpersonationHistoryOut(
        items=[ImpersonationSessionOut.model_validate(s) for s in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        pages=result.pages,
    )
