"""
FastAPI application factory.

Assembles the app, registers the access routers, maps engine errors
onto HTTP responses and wires up lifecycle events.  Database schema is
managed by Alembic, NOT create_all.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from household_access.controllers.impersonation_controller import router as impersonation_router
from household_access.controllers.permission_controller import router as permission_router
from household_access.core.config import settings
from household_access.core.database import AsyncSessionLocal, engine
from household_access.core.errors import AccessError
from household_access.models import Base  # noqa: F401  registers every model

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


async def access_error_handler(request: Request, exc: AccessError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(*, seed_catalog: bool | None = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ── Error mapping ────────────────────────────────────────────────
    app.add_exception_handler(AccessError, access_error_handler)

    # ── Register routers ─────────────────────────────────────────────
    app.include_router(permission_router)
    app.include_router(impersonation_router)

    should_seed = settings.SEED_CATALOG_ON_STARTUP if seed_catalog is None else seed_catalog

    # ── Startup / Shutdown ───────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup() -> None:
        """Seed the permission catalog & system roles on startup.

        NOTE: Database schema is managed by Alembic migrations.
        Run `alembic upgrade head` before starting the app.
        """
        if not should_seed:
            return
        from household_access.rbac.catalog import initialize_catalog

        async with AsyncSessionLocal() as session:
            await initialize_catalog(session)
        logger.info("Permission catalog seed complete.")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await engine.dispose()
        logger.info("Database engine disposed.")

    # ── Health check ─────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
