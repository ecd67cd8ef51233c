"""Auth API router: register, login, refresh, profile."""

from fastapi import APIRouter, Depends

from chatdesk.auth.context import RequestContext
from chatdesk.auth.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from chatdesk.common.ratelimit import rate_limited
from chatdesk.common.responses import ok
from chatdesk.policy.gate import require
from chatdesk.tenants.schemas import TenantSummary

router = APIRouter(prefix="/auth", tags=["auth"])


def _get_service():
    from chatdesk.deps import get_auth_service
    return get_auth_service()


def _get_db():
    from chatdesk.deps import get_db
    return get_db()


def _auth_limiter():
    from chatdesk.deps import get_auth_limiter
    return get_auth_limiter()


def _auth_payload(user, tenant, pair) -> AuthResponse:
    return AuthResponse(
        token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        user=UserResponse.model_validate(user),
        tenant=TenantSummary.model_validate(tenant) if tenant is not None else None,
    )


@router.post("/register", dependencies=[Depends(rate_limited(_auth_limiter, "auth"))])
async def register(body: RegisterRequest):
    svc = _get_service()
    async with _get_db().get_session() as session:
        user, tenant, pair = await svc.register(
            session,
            email=body.email,
            password=body.password,
            name=body.name,
            company_name=body.company_name,
            tenant_slug=body.tenant_slug,
        )
        payload = _auth_payload(user, tenant, pair)

    from chatdesk.deps import get_mailer
    await get_mailer().send_welcome(user.email, user.name, tenant.name, tenant.slug)
    return ok(payload, status_code=201)


@router.post("/login", dependencies=[Depends(rate_limited(_auth_limiter, "auth"))])
async def login(body: LoginRequest):
    svc = _get_service()
    async with _get_db().get_session() as session:
        user, tenant, pair = await svc.login(session, body.email, body.password)
        return ok(_auth_payload(user, tenant, pair))


@router.post("/refresh")
async def refresh(body: RefreshRequest):
    svc = _get_service()
    async with _get_db().get_session() as session:
        pair = await svc.refresh(session, body.refresh_token)
    return ok(TokenResponse(
        token=pair.access_token, refresh_token=pair.refresh_token, expires_in=pair.expires_in,
    ))


@router.post("/logout")
async def logout(ctx: RequestContext = Depends(require(tenant_required=False))):
    # Tokens are stateless; the client discards them.
    return ok({"loggedOut": True})


@router.get("/profile")
async def get_profile(ctx: RequestContext = Depends(require(tenant_required=False))):
    return ok({
        "user": UserResponse.model_validate(ctx.user),
        "tenant": TenantSummary.model_validate(ctx.tenant) if ctx.tenant else None,
        "isMaster": ctx.is_master,
    })


@router.patch("/profile")
async def update_profile(
    body: ProfileUpdate,
    ctx: RequestContext = Depends(require(tenant_required=False)),
):
    svc = _get_service()
    async with _get_db().get_session() as session:
        user = await svc.update_profile(session, ctx.user_id, name=body.name)
        return ok(UserResponse.model_validate(user))


@router.post("/change-password")
async def change_password(
    body: ChangePasswordRequest,
    ctx: RequestContext = Depends(require(tenant_required=False)),
):
    svc = _get_service()
    async with _get_db().get_session() as session:
        await svc.change_password(session, ctx.user_id, body.current_password, body.new_password)
    return ok({"changed": True})
