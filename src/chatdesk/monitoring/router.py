"""Health and operational status endpoints."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from chatdesk.auth.context import RequestContext
from chatdesk.common.responses import ok
from chatdesk.common.schemas import HealthResponse
from chatdesk.policy.gate import require_master

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/monitoring", tags=["monitoring"])


@router.get("/health")
async def health():
    from chatdesk.common.config import get_settings

    return ok(HealthResponse(version=get_settings().api_version))


@router.get("/status")
async def status(ctx: RequestContext = Depends(require_master())):
    from chatdesk.common.config import get_settings
    from chatdesk.deps import get_cors_policy, get_db, get_gateway, get_registry

    try:
        database = "ok" if await get_db().ping() else "unavailable"
    except SQLAlchemyError:
        logger.exception("Database ping failed")
        database = "unavailable"
    return ok({
        "status": "ok" if database == "ok" else "degraded",
        "environment": get_settings().environment,
        "database": database,
        "tenantCache": get_registry().stats(),
        "cors": get_cors_policy().health(),
        "sockets": get_gateway().stats(),
    })


@router.delete("/cache")
async def flush_caches(ctx: RequestContext = Depends(require_master())):
    from chatdesk.deps import get_cors_policy, get_registry

    get_registry().clear()
    get_cors_policy().clear_cache()
    logger.info("Caches flushed", extra=ctx.log_extra())
    return ok({"cleared": ["tenants", "cors"]})
