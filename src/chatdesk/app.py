"""FastAPI application factory for Chatdesk."""

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from chatdesk.common.config import get_settings
from chatdesk.common.logging import setup_logging
from chatdesk.common.ratelimit import rate_limited
from chatdesk.common.responses import install_error_handlers
from chatdesk.common.schemas import HealthResponse
from chatdesk.cors.middleware import TenantCorsMiddleware


def _general_limiter():
    from chatdesk.deps import get_general_limiter
    return get_general_limiter()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging("DEBUG" if settings.is_development else "INFO")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from chatdesk.deps import get_cors_policy, get_db, get_gateway

        db = get_db()
        await db.init()
        await db.create_all()
        get_cors_policy()
        heartbeat = asyncio.create_task(get_gateway().run_heartbeat())
        yield
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(TenantCorsMiddleware)
    install_error_handlers(app)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(version=settings.api_version)

    from chatdesk.auth.router import router as auth_router
    from chatdesk.billing.router import router as billing_router
    from chatdesk.cors.router import router as cors_router
    from chatdesk.files.router import router as files_router
    from chatdesk.history.router import router as history_router
    from chatdesk.master.router import router as master_router
    from chatdesk.monitoring.router import router as monitoring_router
    from chatdesk.realtime.router import router as realtime_router
    from chatdesk.tenants.router import router as tenant_router

    prefix = settings.api_prefix
    limited = [Depends(rate_limited(_general_limiter, "api"))]
    for router in (
        auth_router,
        tenant_router,
        master_router,
        cors_router,
        history_router,
        files_router,
        monitoring_router,
    ):
        app.include_router(router, prefix=prefix, dependencies=limited)
    app.include_router(billing_router, prefix=prefix)
    app.include_router(realtime_router, prefix=prefix)

    return app
