"""
Impersonation session manager.

State machine per administrator:

    NONE ──start──▶ ACTIVE ──end / superseding start──▶ ENDED (terminal)

Rules enforced on `start`:
- An administrator can never impersonate themselves.
- The target must exist.
- Impersonating an elevated target (admin account, or an effective
  Super Admin / Admin grant) requires `users.impersonate_admins`.
- Closing the admin's previous ACTIVE session and opening the new one
  is one transaction.  The partial unique index on
  `impersonation_sessions(admin_id) WHERE is_active` turns a concurrent
  `start` into an IntegrityError, which is retried from a fresh read.
  A superseded session is audited as an END carrying `superseded_by`.

`start` and `end` commit their own unit of work.

The credential handed back on `start` is narrow (subject = target,
`impersonator_id` = admin, bound to the session id) and lives for a
fraction of a normal credential.  Its expiry does NOT close the session
row; only `end` or a superseding `start` does.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from household_access.core.config import settings
from household_access.core.database import store_guard
from household_access.core.errors import (
    ConflictError,
    NotFoundError,
    PrivilegeError,
    SelfImpersonationError,
    ValidationError,
)
from household_access.core.security import (
    CredentialIssuer,
    JoseCredentialIssuer,
    default_token_ttl,
    impersonation_token_ttl,
)
from household_access.models.base import utcnow
from household_access.models.grant import UserRole
from household_access.models.impersonation import ImpersonationSession
from household_access.models.role import Role
from household_access.models.user import User
from household_access.rbac.catalog import CROSS_ADMIN_IMPERSONATION, ELEVATED_ROLE_NAMES
from household_access.rbac.resolver import AuthorizationResolver, effective_grant_clause
from household_access.services import audit
from household_access.services.audit import AuditEvent, AuditSink, LoggingAuditSink

logger = logging.getLogger("impersonation")

IMPERSONATION_SCOPE = "impersonation"
FULL_SCOPE = "full"


@dataclass
class ImpersonationStarted:
    session: ImpersonationSession
    credential: str
    expires_in: int  # seconds


@dataclass
class ImpersonationEnded:
    session: ImpersonationSession
    credential: str
    expires_in: int


@dataclass
class ImpersonationStatus:
    is_impersonating: bool
    session: ImpersonationSession | None = None


@dataclass
class SessionPage:
    items: list[ImpersonationSession] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size


class ImpersonationManager:
    def __init__(
        self,
        db: AsyncSession,
        *,
        resolver: AuthorizationResolver | None = None,
        issuer: CredentialIssuer | None = None,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_start_attempts: int | None = None,
    ):
        self.db = db
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.clock = clock
        self.resolver = resolver or AuthorizationResolver(db, audit_sink=self.audit_sink, clock=clock)
        self.issuer = issuer or JoseCredentialIssuer()
        self.max_start_attempts = max_start_attempts or settings.IMPERSONATION_MAX_START_RETRIES

    # ── Privilege helpers ────────────────────────────────────────────
    async def _is_elevated(self, target: User) -> bool:
        if target.is_elevated_account:
            return True
        stmt = (
            select(Role.id)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(
                UserRole.user_id == target.id,
                effective_grant_clause(self.clock()),
                Role.name.in_(ELEVATED_ROLE_NAMES),
            )
            .limit(1)
        )
        return (await self.db.execute(stmt)).first() is not None

    async def _get_active(self, admin_id: uuid.UUID) -> ImpersonationSession | None:
        stmt = (
            select(ImpersonationSession)
            .where(
                ImpersonationSession.admin_id == admin_id,
                ImpersonationSession.is_active == True,  # noqa: E712
            )
            .order_by(ImpersonationSession.started_at.desc())
        )
        return (await self.db.execute(stmt)).scalars().first()

    # ── Transitions ──────────────────────────────────────────────────
    async def _open_session(
        self,
        admin_id: uuid.UUID,
        target_user_id: uuid.UUID,
        reason: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> tuple[ImpersonationSession, list[tuple[uuid.UUID, uuid.UUID]]]:
        """Close-then-open in one transaction, retrying lost races.

        Returns the new session and `(id, target_user_id)` of every
        session it superseded.
        """
        for attempt in range(1, self.max_start_attempts + 1):
            try:
                now = self.clock()
                stale = select(ImpersonationSession.id, ImpersonationSession.target_user_id).where(
                    ImpersonationSession.admin_id == admin_id,
                    ImpersonationSession.is_active == True,  # noqa: E712
                )
                superseded = [(sid, target) for sid, target in (await self.db.execute(stale)).all()]
                if superseded:
                    # a row activated after this read trips the unique index
                    await self.db.execute(
                        update(ImpersonationSession)
                        .where(
                            ImpersonationSession.id.in_([sid for sid, _ in superseded]),
                            ImpersonationSession.is_active == True,  # noqa: E712
                        )
                        .values(is_active=False, ended_at=now)
                        .execution_options(synchronize_session="fetch")
                    )
                session = ImpersonationSession(
                    admin_id=admin_id,
                    target_user_id=target_user_id,
                    reason=reason,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    started_at=now,
                    is_active=True,
                )
                self.db.add(session)
                await self.db.flush()
                await self.db.commit()
                return session, superseded
            except IntegrityError:
                await self.db.rollback()
                logger.warning(
                    "Concurrent impersonation start for admin %s (attempt %d/%d)",
                    admin_id,
                    attempt,
                    self.max_start_attempts,
                )
        raise ConflictError("Another impersonation session was started concurrently, retry")

    async def start(
        self,
        admin_id: uuid.UUID,
        target_user_id: uuid.UUID | None,
        reason: str | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ImpersonationStarted:
        if target_user_id is None:
            raise ValidationError("Target user is required")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to impersonate a user")
        if target_user_id == admin_id:
            raise SelfImpersonationError()

        async with store_guard(self.db, "impersonation start"):
            target = await self.db.get(User, target_user_id)
            if target is None:
                raise NotFoundError("Target user not found")

            if await self._is_elevated(target) and not await self.resolver.has_permission(
                admin_id, CROSS_ADMIN_IMPERSONATION
            ):
                logger.warning(
                    "Admin %s denied impersonation of elevated user %s",
                    admin_id,
                    target_user_id,
                )
                raise PrivilegeError("Cannot impersonate another administrator")

            session, superseded = await self._open_session(
                admin_id, target_user_id, reason, ip_address, user_agent
            )

        ttl = impersonation_token_ttl()
        credential = self.issuer.issue(
            str(target_user_id),
            {
                "session_id": str(session.id),
                "impersonator_id": str(admin_id),
                "scope": IMPERSONATION_SCOPE,
            },
            ttl,
        )
        for previous_id, previous_target in superseded:
            audit.emit(
                self.audit_sink,
                AuditEvent(
                    actor_id=admin_id,
                    action=audit.END_IMPERSONATION,
                    entity_type="impersonation",
                    entity_id=previous_id,
                    target_id=previous_target,
                    details={"superseded_by": str(session.id)},
                ),
            )
        audit.emit(
            self.audit_sink,
            AuditEvent(
                actor_id=admin_id,
                action=audit.START_IMPERSONATION,
                entity_type="impersonation",
                entity_id=session.id,
                target_id=target_user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": reason},
            ),
        )
        logger.info("Admin %s started impersonating %s", admin_id, target_user_id)
        return ImpersonationStarted(session, credential, int(ttl.total_seconds()))

    async def end(self, admin_id: uuid.UUID) -> ImpersonationEnded:
        async with store_guard(self.db, "impersonation end"):
            active = await self._get_active(admin_id)
            if active is None:
                raise NotFoundError("No active impersonation session")

            result = await self.db.execute(
                update(ImpersonationSession)
                .where(
                    ImpersonationSession.id == active.id,
                    ImpersonationSession.is_active == True,  # noqa: E712
                )
                .values(is_active=False, ended_at=self.clock())
                .execution_options(synchronize_session="fetch")
            )
            if result.rowcount == 0:
                # ended by a concurrent request between read and write
                raise NotFoundError("No active impersonation session")
            await self.db.commit()
            await self.db.refresh(active)

        ttl = default_token_ttl()
        credential = self.issuer.issue(str(admin_id), {"scope": FULL_SCOPE}, ttl)
        audit.emit(
            self.audit_sink,
            AuditEvent(
                actor_id=admin_id,
                action=audit.END_IMPERSONATION,
                entity_type="impersonation",
                entity_id=active.id,
                target_id=active.target_user_id,
            ),
        )
        logger.info("Admin %s ended impersonation of %s", admin_id, active.target_user_id)
        return ImpersonationEnded(active, credential, int(ttl.total_seconds()))

    # ── Read-only projections ────────────────────────────────────────
    async def status(self, admin_id: uuid.UUID) -> ImpersonationStatus:
        async with store_guard(self.db, "impersonation status"):
            active = await self._get_active(admin_id)
        return ImpersonationStatus(is_impersonating=active is not None, session=active)

    async def list_active(self) -> list[ImpersonationSession]:
        stmt = (
            select(ImpersonationSession)
            .where(ImpersonationSession.is_active == True)  # noqa: E712
            .order_by(ImpersonationSession.started_at.desc())
        )
        async with store_guard(self.db, "impersonation list_active"):
            return list((await self.db.execute(stmt)).scalars().all())

    async def list_history(
        self,
        *,
        admin_id: uuid.UUID | None = None,
        target_user_id: uuid.UUID | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> SessionPage:
        page_size = page_size or settings.HISTORY_PAGE_SIZE
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")

        filters = []
        if admin_id is not None:
            filters.append(ImpersonationSession.admin_id == admin_id)
        if target_user_id is not None:
            filters.append(ImpersonationSession.target_user_id == target_user_id)

        count_stmt = select(func.count(ImpersonationSession.id))
        stmt = select(ImpersonationSession)
        if filters:
            count_stmt = count_stmt.where(*filters)
            stmt = stmt.where(*filters)

        async with store_guard(self.db, "impersonation list_history"):
            total = (await self.db.execute(count_stmt)).scalar_one()
            stmt = (
                stmt.order_by(ImpersonationSession.started_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            items = list((await self.db.execute(stmt)).scalars().all())

        return SessionPage(items=items, total=total, page=page, page_size=page_size)
