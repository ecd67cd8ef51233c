"""Tenant self-service API."""

from fastapi import APIRouter, Depends

from chatdesk.auth.context import RequestContext
from chatdesk.auth.dependencies import current_context
from chatdesk.auth.models import UserModel
from chatdesk.auth.roles import Role
from chatdesk.auth.schemas import UserResponse
from chatdesk.common.exceptions import TenantUnidentifiedError
from chatdesk.common.responses import ok
from chatdesk.policy.gate import require
from chatdesk.scoping.scoped import store_for
from chatdesk.tenants.schemas import TenantPublic, TenantUpdate, TenantUserCreate, UsageResponse
from chatdesk.tenants.service import tenant_response

router = APIRouter(prefix="/tenants", tags=["tenants"])


def _get_service():
    from chatdesk.deps import get_tenant_service
    return get_tenant_service()


def _get_db():
    from chatdesk.deps import get_db
    return get_db()


def _target_tenant(ctx: RequestContext) -> str:
    tenant_id = ctx.tenant_id or (ctx.master_scope if ctx.is_master else None)
    if not tenant_id:
        raise TenantUnidentifiedError()
    return tenant_id


@router.get("/resolve")
async def resolve_tenant(ctx: RequestContext = Depends(current_context)):
    if ctx.tenant is None and not ctx.is_master:
        raise TenantUnidentifiedError()
    return ok({
        "tenantId": ctx.tenant_id,
        "tenant": TenantPublic.model_validate(ctx.tenant) if ctx.tenant else None,
        "strategy": ctx.resolved_by,
        "isMaster": ctx.is_master,
    })


@router.get("/public/{slug}")
async def public_tenant(slug: str):
    from chatdesk.deps import get_registry

    tenant = await get_registry().find_by_slug(slug)
    return ok(TenantPublic.model_validate(tenant))


@router.get("/current")
async def current_tenant(ctx: RequestContext = Depends(require())):
    from chatdesk.deps import get_accountant

    async with _get_db().get_session() as session:
        tenant = await _get_service().get(session, _target_tenant(ctx))
        snapshot = await get_accountant().snapshot(session, tenant.id)
        return ok(tenant_response(tenant, snapshot))


@router.patch("/current")
async def update_current_tenant(
    body: TenantUpdate,
    ctx: RequestContext = Depends(require(Role.admin.value)),
):
    async with _get_db().get_session() as session:
        tenant = await _get_service().update_tenant(
            session, _target_tenant(ctx), **body.model_dump(exclude_unset=True)
        )
        return ok(tenant_response(tenant))


@router.get("/current/usage")
async def current_usage(ctx: RequestContext = Depends(require(Role.admin.value))):
    from chatdesk.deps import get_accountant

    async with _get_db().get_session() as session:
        tenant = await _get_service().get(session, _target_tenant(ctx))
        snapshot = await get_accountant().snapshot(session, tenant.id)
    return ok(UsageResponse(
        tenant_id=tenant.id, plan=tenant.plan,
        limits=snapshot["limits"], usage=snapshot["usage"],
    ))


@router.get("/users")
async def list_users(
    role: str | None = None,
    include_inactive: bool = False,
    ctx: RequestContext = Depends(require(Role.admin.value)),
):
    filter: dict = {}
    if role:
        filter["role"] = role
    if not include_inactive:
        filter["is_active"] = True
    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        users = await store.find(UserModel, filter, sort=[("created_at", -1)])
        return ok([UserResponse.model_validate(u) for u in users])


@router.post("/users")
async def create_user(
    body: TenantUserCreate,
    ctx: RequestContext = Depends(require(Role.admin.value, quota=("maxUsers", 1))),
):
    from chatdesk.deps import get_auth_service

    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        user = await get_auth_service().create_tenant_user(
            store, session,
            email=body.email, password=body.password, name=body.name,
            role=body.role, created_by=ctx.user_id,
        )
        return ok(UserResponse.model_validate(user), status_code=201)


@router.delete("/users/{user_id}")
async def deactivate_user(
    user_id: str,
    ctx: RequestContext = Depends(require(Role.admin.value)),
):
    from chatdesk.deps import get_auth_service

    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        owner_id = ctx.tenant.owner_id if ctx.tenant is not None else None
        await get_auth_service().deactivate_user(
            store, session, user_id, actor_id=ctx.user_id, owner_id=owner_id,
        )
    return ok({"deactivated": True})
