"""CORS allow-list management API."""

import logging

from fastapi import APIRouter, Depends
from pydantic import Field

from chatdesk.auth.context import RequestContext
from chatdesk.auth.roles import Role
from chatdesk.common.exceptions import NotFoundError, TenantUnidentifiedError, ValidationError
from chatdesk.common.responses import ok
from chatdesk.common.schemas import CamelModel
from chatdesk.cors.policy import is_valid_pattern, normalize_origin
from chatdesk.policy.gate import require, require_master

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cors", tags=["cors"])


class OriginBody(CamelModel):
    origin: str = Field(..., min_length=1, max_length=255)


class OriginsBody(CamelModel):
    origins: list[str]


def _get_db():
    from chatdesk.deps import get_db
    return get_db()


def _policy():
    from chatdesk.deps import get_cors_policy
    return get_cors_policy()


def _tenant_id(ctx: RequestContext) -> str:
    tenant_id = ctx.tenant_id or (ctx.master_scope if ctx.is_master else None)
    if not tenant_id:
        raise TenantUnidentifiedError()
    return tenant_id


def _checked(origins: list[str]) -> list[str]:
    cleaned = [normalize_origin(o) for o in origins]
    invalid = [o for o in cleaned if not is_valid_pattern(o)]
    if invalid:
        raise ValidationError(
            "Invalid origin pattern",
            details=[{"field": "origin", "message": o} for o in invalid],
        )
    if "*" in cleaned:
        logger.warning("Unrestricted origin '*' configured")
    return cleaned


async def _read_origins(tenant_id: str) -> list[str]:
    from chatdesk.deps import get_tenant_service

    async with _get_db().get_session() as session:
        tenant = await get_tenant_service().get(session, tenant_id)
        return list(tenant.allowed_origins or [])


async def _write_origins(tenant_id: str, origins: list[str]) -> list[str]:
    from chatdesk.deps import get_tenant_service

    async with _get_db().get_session() as session:
        tenant = await get_tenant_service().set_allowed_origins(session, tenant_id, origins)
        result = list(tenant.allowed_origins)
    # Registry invalidation already dropped cached decisions for this tenant.
    return result


@router.get("/origins")
async def list_origins(ctx: RequestContext = Depends(require(Role.admin.value))):
    return ok({"origins": await _read_origins(_tenant_id(ctx))})


@router.post("/origins")
async def add_origin(body: OriginBody, ctx: RequestContext = Depends(require(Role.admin.value))):
    tenant_id = _tenant_id(ctx)
    (origin,) = _checked([body.origin])
    origins = await _read_origins(tenant_id)
    if origin not in origins:
        origins.append(origin)
    return ok({"origins": await _write_origins(tenant_id, origins)}, status_code=201)


@router.put("/origins")
async def replace_origins(body: OriginsBody, ctx: RequestContext = Depends(require(Role.admin.value))):
    tenant_id = _tenant_id(ctx)
    return ok({"origins": await _write_origins(tenant_id, _checked(body.origins))})


@router.delete("/origins")
async def remove_origin(origin: str, ctx: RequestContext = Depends(require(Role.admin.value))):
    tenant_id = _tenant_id(ctx)
    target = normalize_origin(origin)
    origins = await _read_origins(tenant_id)
    if target not in origins:
        raise NotFoundError("Origin is not in the allow-list")
    origins.remove(target)
    return ok({"origins": await _write_origins(tenant_id, origins)})


@router.get("/validate")
async def validate_origin(origin: str, ctx: RequestContext = Depends(require(Role.admin.value))):
    from chatdesk.deps import get_registry

    tenant = await get_registry().find_by_id(_tenant_id(ctx), include_inactive=True)
    decision = _policy().evaluate(origin, tenant)
    return ok({
        "origin": decision.origin,
        "allowed": decision.allowed,
        "reason": decision.reason,
        "matched": decision.matched,
        "validPattern": is_valid_pattern(origin),
    })


@router.get("/stats")
async def get_stats(ctx: RequestContext = Depends(require(Role.admin.value))):
    if ctx.is_master and not ctx.master_scope:
        return ok(_policy().stats())
    return ok(_policy().stats(_tenant_id(ctx)))


@router.delete("/stats")
async def clear_stats(ctx: RequestContext = Depends(require(Role.admin.value))):
    if ctx.is_master and not ctx.master_scope:
        _policy().clear_stats()
    else:
        _policy().clear_stats(_tenant_id(ctx))
    return ok({"cleared": True})


@router.get("/suggestions")
async def get_suggestions(ctx: RequestContext = Depends(require(Role.admin.value))):
    return ok({"suggestions": _policy().suggestions(_tenant_id(ctx))})


@router.delete("/cache")
async def clear_cache(ctx: RequestContext = Depends(require_master())):
    _policy().clear_cache()
    return ok({"cleared": True})


@router.get("/health")
async def cors_health(ctx: RequestContext = Depends(require_master())):
    return ok(_policy().health())


@router.get("/tenant/{tenant_id}/origins")
async def tenant_origins(tenant_id: str, ctx: RequestContext = Depends(require_master())):
    return ok({"tenantId": tenant_id, "origins": await _read_origins(tenant_id)})


@router.put("/tenant/{tenant_id}/origins")
async def set_tenant_origins(
    tenant_id: str,
    body: OriginsBody,
    ctx: RequestContext = Depends(require_master()),
):
    return ok({"tenantId": tenant_id, "origins": await _write_origins(tenant_id, _checked(body.origins))})
