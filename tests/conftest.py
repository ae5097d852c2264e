"""Shared fixtures: a throwaway SQLite database per test, a seeded
catalog, deterministic clock and recording collaborators."""

from __future__ import annotations

import os

# database.py builds the module-level engine at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest-household-access.db")
os.environ.setdefault("SEED_CATALOG_ON_STARTUP", "false")

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from household_access.core.database import get_db
from household_access.core.security import JoseCredentialIssuer
from household_access.main import create_app
from household_access.models import AccountType, Base, Permission, Role, RolePermission, User
from household_access.rbac.catalog import initialize_catalog
from household_access.rbac.dependencies import get_audit_sink
from household_access.rbac.resolver import AuthorizationResolver
from household_access.services.audit import AuditEvent
from household_access.services.impersonation_service import ImpersonationManager


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


class RecordingIssuer:
    def __init__(self) -> None:
        self.issued: list[tuple[str, dict[str, Any], timedelta]] = []

    def issue(self, subject: str, claims: dict[str, Any], ttl: timedelta) -> str:
        self.issued.append((subject, dict(claims), ttl))
        return f"credential-{len(self.issued)}"


# ── Store ────────────────────────────────────────────────────────────
@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'access.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def catalog(session: AsyncSession) -> None:
    await initialize_catalog(session)


# ── Collaborators ────────────────────────────────────────────────────
@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def issuer() -> RecordingIssuer:
    return RecordingIssuer()


@pytest.fixture
def resolver(session, audit_sink, clock) -> AuthorizationResolver:
    return AuthorizationResolver(session, audit_sink=audit_sink, clock=clock)


@pytest.fixture
def manager(session, resolver, issuer, audit_sink, clock) -> ImpersonationManager:
    return ImpersonationManager(
        session,
        resolver=resolver,
        issuer=issuer,
        audit_sink=audit_sink,
        clock=clock,
    )


# ── Factories ────────────────────────────────────────────────────────
@pytest.fixture
def make_user(session: AsyncSession) -> Callable[..., Awaitable[User]]:
    async def _make(account_type: AccountType = AccountType.CUSTOMER, name: str = "Test User") -> User:
        user = User(
            email=f"{uuid4().hex}@example.test",
            full_name=name,
            account_type=account_type,
        )
        session.add(user)
        await session.commit()
        return user

    return _make


@pytest.fixture
def get_role(session: AsyncSession) -> Callable[[str], Awaitable[Role]]:
    async def _get(name: str) -> Role:
        return (await session.execute(select(Role).where(Role.name == name))).scalar_one()

    return _get


@pytest.fixture
def make_role(session: AsyncSession) -> Callable[..., Awaitable[Role]]:
    """Custom role from (permission name, conditions) pairs."""

    async def _make(name: str, rows: list[tuple[str, Any]]) -> Role:
        names = [perm for perm, _ in rows]
        result = await session.execute(select(Permission).where(Permission.name.in_(names)))
        by_name = {p.name: p for p in result.scalars().all()}
        role = Role(
            name=name,
            is_system=False,
            role_permissions=[
                RolePermission(permission_id=by_name[perm].id, permission=by_name[perm], conditions=cond)
                for perm, cond in rows
            ],
        )
        session.add(role)
        await session.commit()
        return role

    return _make


# ── HTTP ─────────────────────────────────────────────────────────────
@pytest.fixture
def app(session_factory, audit_sink) -> FastAPI:
    app = create_app(seed_catalog=False)

    async def _get_db() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_audit_sink] = lambda: audit_sink
    return app


@pytest_asyncio.fixture
async def async_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    issuer = JoseCredentialIssuer()

    def _headers(user: User, **claims: Any) -> dict[str, str]:
        token = issuer.issue(str(user.id), claims, timedelta(minutes=5))
        return {"Authorization": f"Bearer {token}"}

    return _headers
