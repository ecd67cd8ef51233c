"""Master console API: cross-tenant administration."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from chatdesk.auth.context import RequestContext
from chatdesk.auth.models import UserModel
from chatdesk.auth.schemas import TokenResponse, UserResponse
from chatdesk.common.exceptions import NotFoundError, ValidationError
from chatdesk.common.responses import ok
from chatdesk.policy.gate import require_master
from chatdesk.tenants.schemas import (
    ChangePlanRequest,
    ImpersonateRequest,
    MasterTenantUpdate,
    SuspendRequest,
    TenantCreate,
    ToggleModuleRequest,
)
from chatdesk.tenants.service import tenant_response

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("chatdesk.master.audit")

router = APIRouter(prefix="/master", tags=["master"])


def _get_service():
    from chatdesk.deps import get_tenant_service
    return get_tenant_service()


def _get_db():
    from chatdesk.deps import get_db
    return get_db()


def _get_accountant():
    from chatdesk.deps import get_accountant
    return get_accountant()


async def _with_usage(session, tenant):
    return tenant_response(tenant, await _get_accountant().snapshot(session, tenant.id))


@router.get("/dashboard")
async def dashboard(ctx: RequestContext = Depends(require_master())):
    async with _get_db().get_session() as session:
        return ok(await _get_service().dashboard(session))


@router.get("/tenants")
async def list_tenants(
    plan: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = Query(None, max_length=100),
    ctx: RequestContext = Depends(require_master()),
):
    async with _get_db().get_session() as session:
        tenants = await _get_service().list_tenants(session, plan=plan, status=status, search=search)
        return ok([tenant_response(t) for t in tenants])


@router.post("/tenants")
async def create_tenant(body: TenantCreate, ctx: RequestContext = Depends(require_master())):
    from chatdesk.deps import get_auth_service

    if body.owner_email and not body.owner_password:
        raise ValidationError("ownerPassword is required when ownerEmail is given")
    async with _get_db().get_session() as session:
        tenant = await _get_service().create_tenant(
            session,
            name=body.name,
            slug=body.slug,
            email=body.email or body.owner_email,
            plan=body.plan,
            billing_cycle=body.billing_cycle,
            limits=body.limits,
            modules=body.modules,
            allowed_origins=body.allowed_origins,
            created_by=ctx.user_id,
        )
        owner = None
        if body.owner_email:
            owner = await get_auth_service().create_owner(
                session, tenant, body.owner_email, body.owner_password,
                name=body.owner_name or body.name, created_by=ctx.user_id,
            )
        data = await _with_usage(session, tenant)
        owner_data = UserResponse.model_validate(owner) if owner is not None else None
    audit_logger.info("Tenant created", extra={"user_id": ctx.user_id, "tenant_id": data.id})
    return ok({"tenant": data, "owner": owner_data}, status_code=201)


@router.get("/tenants/{tenant_id}")
async def get_tenant(tenant_id: str, ctx: RequestContext = Depends(require_master())):
    async with _get_db().get_session() as session:
        tenant = await _get_service().get(session, tenant_id)
        return ok(await _with_usage(session, tenant))


@router.patch("/tenants/{tenant_id}")
async def update_tenant(
    tenant_id: str,
    body: MasterTenantUpdate,
    ctx: RequestContext = Depends(require_master()),
):
    async with _get_db().get_session() as session:
        tenant = await _get_service().update_tenant(
            session, tenant_id, **body.model_dump(exclude_unset=True)
        )
        return ok(await _with_usage(session, tenant))


@router.post("/tenants/{tenant_id}/toggle-module")
async def toggle_module(
    tenant_id: str,
    body: ToggleModuleRequest,
    ctx: RequestContext = Depends(require_master()),
):
    async with _get_db().get_session() as session:
        tenant = await _get_service().toggle_module(
            session, tenant_id, body.module, enabled=body.enabled, features=body.features,
        )
        return ok({"tenantId": tenant.id, "modules": tenant.modules})


@router.post("/tenants/{tenant_id}/plan")
async def change_plan(
    tenant_id: str,
    body: ChangePlanRequest,
    ctx: RequestContext = Depends(require_master()),
):
    async with _get_db().get_session() as session:
        tenant = await _get_service().change_plan(session, tenant_id, body.plan, body.billing_cycle)
        data = await _with_usage(session, tenant)
    audit_logger.info(
        "Plan changed", extra={"user_id": ctx.user_id, "tenant_id": tenant_id, "plan": body.plan},
    )
    return ok(data)


@router.post("/tenants/{tenant_id}/suspend")
async def suspend_tenant(
    tenant_id: str,
    body: SuspendRequest,
    ctx: RequestContext = Depends(require_master()),
):
    async with _get_db().get_session() as session:
        tenant = await _get_service().suspend(session, tenant_id, body.reason)
        data = tenant_response(tenant)
    await _get_service().settled()
    audit_logger.warning(
        "Tenant suspended", extra={"user_id": ctx.user_id, "tenant_id": tenant_id, "reason": body.reason},
    )
    return ok(data)


@router.post("/tenants/{tenant_id}/reactivate")
async def reactivate_tenant(tenant_id: str, ctx: RequestContext = Depends(require_master())):
    async with _get_db().get_session() as session:
        tenant = await _get_service().reactivate(session, tenant_id)
        data = tenant_response(tenant)
    audit_logger.info("Tenant reactivated", extra={"user_id": ctx.user_id, "tenant_id": tenant_id})
    return ok(data)


@router.post("/tenants/{tenant_id}/reset-usage")
async def reset_usage(tenant_id: str, ctx: RequestContext = Depends(require_master())):
    async with _get_db().get_session() as session:
        tenant = await _get_service().get(session, tenant_id)
        reset = await _get_accountant().reset_monthly(session, tenant.id, force=True)
        snapshot = await _get_accountant().snapshot(session, tenant.id)
    audit_logger.info("Usage reset", extra={"user_id": ctx.user_id, "tenant_id": tenant_id})
    return ok({"tenantId": tenant_id, "reset": reset, "usage": snapshot["usage"]})


@router.post("/impersonate")
async def impersonate(body: ImpersonateRequest, ctx: RequestContext = Depends(require_master())):
    """Issue tokens for the owner of a tenant."""
    from chatdesk.deps import get_token_service

    async with _get_db().get_session() as session:
        tenant = await _get_service().get(session, body.tenant_id)
        owner = await session.get(UserModel, tenant.owner_id) if tenant.owner_id else None
        if owner is None or not owner.is_active:
            raise NotFoundError("Tenant has no active owner to impersonate")
        pair = get_token_service().issue_pair(owner)
        user = UserResponse.model_validate(owner)
    audit_logger.warning(
        "Impersonation token issued",
        extra={"user_id": ctx.user_id, "tenant_id": tenant.id, "target_user": owner.id},
    )
    return ok({
        "tokens": TokenResponse(
            token=pair.access_token, refresh_token=pair.refresh_token, expires_in=pair.expires_in,
        ),
        "user": user,
    })
