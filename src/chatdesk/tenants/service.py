"""Tenant lifecycle operations."""

import asyncio
import logging
import re
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatdesk.auth.models import UserModel
from chatdesk.common.exceptions import ConflictError, TenantNotFoundError, ValidationError
from chatdesk.common.models import utcnow
from chatdesk.tenants.models import TenantModel
from chatdesk.tenants.plans import MODULES, TRIAL_DAYS, get_plan, price_for
from chatdesk.tenants.registry import TenantRegistry
from chatdesk.tenants.schemas import TenantResponse
from chatdesk.usage.accountant import QuotaAccountant

logger = logging.getLogger(__name__)

_NON_SLUG = re.compile(r"[^a-z0-9]+")

DisabledHook = Callable[[str, str], Awaitable[Any]]


def slugify(value: str) -> str:
    slug = _NON_SLUG.sub("-", value.lower()).strip("-")
    return slug[:90] or "tenant"


def tenant_response(tenant: TenantModel, snapshot: Optional[dict] = None) -> TenantResponse:
    snapshot = snapshot or {}
    return TenantResponse.model_validate(tenant).model_copy(
        update={"limits": snapshot.get("limits", {}), "usage": snapshot.get("usage", {})}
    )


class TenantService:
    """Create, update, suspend and re-plan tenants.

    Every mutation invalidates the registry entry for the tenant.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        accountant: QuotaAccountant,
        on_disabled: Optional[DisabledHook] = None,
    ):
        self._registry = registry
        self._accountant = accountant
        self._on_disabled = on_disabled
        self._hooks: set[asyncio.Task] = set()

    async def unique_slug(self, session: AsyncSession, base: str) -> str:
        root = slugify(base)
        if len(root) < 2:
            root = f"{root}-co"
        candidate, counter = root, 0
        while await self.get_by_slug(session, candidate) is not None:
            counter += 1
            candidate = f"{root}-{counter}"
        return candidate

    async def get(self, session: AsyncSession, tenant_id: str) -> TenantModel:
        tenant = await session.get(TenantModel, tenant_id)
        if tenant is None:
            raise TenantNotFoundError()
        return tenant

    async def get_by_slug(self, session: AsyncSession, slug: str) -> TenantModel | None:
        result = await session.execute(select(TenantModel).where(TenantModel.slug == slug))
        return result.scalar_one_or_none()

    async def list_tenants(
        self,
        session: AsyncSession,
        plan: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[TenantModel]:
        stmt = select(TenantModel).order_by(TenantModel.created_at.desc())
        if plan:
            stmt = stmt.where(TenantModel.plan == plan)
        if status:
            stmt = stmt.where(TenantModel.subscription_status == status)
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(
                func.lower(TenantModel.name).like(pattern) | TenantModel.slug.like(pattern)
            )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def create_tenant(
        self,
        session: AsyncSession,
        name: str,
        slug: Optional[str] = None,
        email: Optional[str] = None,
        plan: str = "trial",
        billing_cycle: str = "monthly",
        limits: Optional[dict[str, Optional[int]]] = None,
        modules: Optional[dict[str, Any]] = None,
        allowed_origins: Optional[list[str]] = None,
        created_by: Optional[str] = None,
    ) -> TenantModel:
        """Create a tenant on ``plan``; ``limits``/``modules`` override plan defaults."""
        plan_def = get_plan(plan)
        if slug:
            if await self.get_by_slug(session, slug) is not None:
                raise ConflictError(f"Tenant slug '{slug}' is already taken")
        else:
            slug = await self.unique_slug(session, name)

        now = utcnow()
        tenant = TenantModel(
            name=name,
            slug=slug,
            email=email,
            plan=plan,
            billing_cycle=billing_cycle,
            subscription_status="trialing" if plan == "trial" else "active",
            trial_ends_at=now + timedelta(days=TRIAL_DAYS) if plan == "trial" else None,
            current_period_start=now,
            monthly_price=price_for(plan, billing_cycle),
            modules=_merge_modules(plan_def.module_map(), modules),
            allowed_origins=list(allowed_origins or []),
            branding={},
            settings={"timezone": "UTC", "language": "en", "currency": "USD"},
            created_by=created_by,
        )
        session.add(tenant)
        await session.flush()

        effective = dict(plan_def.limits)
        effective.update(limits or {})
        await self._accountant.set_limits(session, tenant.id, effective)
        logger.info("Tenant created", extra={"tenant_id": tenant.id, "slug": slug, "plan": plan})
        return tenant

    def _changed(self, session: AsyncSession, tenant: TenantModel) -> None:
        """Drop cached copies now and again once the change is committed."""
        tenant_id, slug = tenant.id, tenant.slug
        self._registry.invalidate(tenant_id, slug)
        event.listen(
            session.sync_session, "after_commit",
            lambda _: self._registry.invalidate(tenant_id, slug), once=True,
        )

    def _after_commit(self, session: AsyncSession, hook: DisabledHook, *args) -> None:
        loop = asyncio.get_running_loop()

        def _fire(_) -> None:
            task = loop.create_task(hook(*args))
            self._hooks.add(task)
            task.add_done_callback(self._hook_done)

        event.listen(session.sync_session, "after_commit", _fire, once=True)

    def _hook_done(self, task: asyncio.Task) -> None:
        self._hooks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Tenant hook failed", exc_info=task.exception())

    async def settled(self) -> None:
        """Wait for hooks fired by committed changes."""
        if self._hooks:
            await asyncio.gather(*self._hooks, return_exceptions=True)

    async def update_tenant(
        self, session: AsyncSession, tenant_id: str, **updates
    ) -> TenantModel:
        tenant = await self.get(session, tenant_id)
        if "slug" in updates and updates["slug"] not in (None, tenant.slug):
            raise ValidationError("Tenant slug cannot be changed")
        for field in ("name", "email", "subscription_status", "billing_cycle", "is_active"):
            if updates.get(field) is not None:
                setattr(tenant, field, updates[field])
        for field in ("branding", "settings"):
            if updates.get(field) is not None:
                setattr(tenant, field, {**(getattr(tenant, field) or {}), **updates[field]})
        if updates.get("modules") is not None:
            tenant.modules = _merge_modules(tenant.modules or {}, updates["modules"])
        if updates.get("limits") is not None:
            snapshot = await self._accountant.snapshot(session, tenant.id)
            merged = {**snapshot["limits"], **updates["limits"]}
            await self._accountant.set_limits(session, tenant.id, merged)
        await session.flush()
        self._changed(session, tenant)
        return tenant

    async def toggle_module(
        self,
        session: AsyncSession,
        tenant_id: str,
        module: str,
        enabled: Optional[bool] = None,
        features: Optional[list[str]] = None,
    ) -> TenantModel:
        if module not in MODULES:
            raise ValidationError(f"Unknown module '{module}'")
        tenant = await self.get(session, tenant_id)
        current = dict((tenant.modules or {}).get(module) or {"enabled": False, "features": []})
        current["enabled"] = (not current.get("enabled")) if enabled is None else enabled
        if features is not None:
            current["features"] = sorted(set(features))
        tenant.modules = {**(tenant.modules or {}), module: current}
        await session.flush()
        self._changed(session, tenant)
        logger.info(
            "Module toggled",
            extra={"tenant_id": tenant.id, "module": module, "enabled": current["enabled"]},
        )
        return tenant

    async def change_plan(
        self, session: AsyncSession, tenant_id: str, plan: str, billing_cycle: str = "monthly"
    ) -> TenantModel:
        """Move to ``plan``: modules and limits are rewritten from the catalog."""
        plan_def = get_plan(plan)
        tenant = await self.get(session, tenant_id)
        tenant.plan = plan
        tenant.billing_cycle = billing_cycle
        tenant.monthly_price = price_for(plan, billing_cycle)
        tenant.modules = plan_def.module_map()
        if plan != "trial" and tenant.subscription_status in ("trialing", "expired"):
            tenant.subscription_status = "active"
        await self._accountant.set_limits(session, tenant.id, dict(plan_def.limits))
        await session.flush()
        self._changed(session, tenant)
        return tenant

    async def set_allowed_origins(
        self, session: AsyncSession, tenant_id: str, origins: list[str]
    ) -> TenantModel:
        tenant = await self.get(session, tenant_id)
        tenant.allowed_origins = list(dict.fromkeys(origins))
        await session.flush()
        self._changed(session, tenant)
        return tenant

    async def suspend(
        self, session: AsyncSession, tenant_id: str, reason: str
    ) -> TenantModel:
        tenant = await self.get(session, tenant_id)
        tenant.is_suspended = True
        tenant.is_active = False
        tenant.suspended_reason = reason
        tenant.suspended_at = utcnow()
        tenant.subscription_status = "suspended"
        await session.flush()
        self._changed(session, tenant)
        logger.warning("Tenant suspended", extra={"tenant_id": tenant.id, "reason": reason})
        if self._on_disabled is not None:
            self._after_commit(session, self._on_disabled, tenant.id, reason)
        return tenant

    async def reactivate(self, session: AsyncSession, tenant_id: str) -> TenantModel:
        tenant = await self.get(session, tenant_id)
        tenant.is_suspended = False
        tenant.is_active = True
        tenant.suspended_reason = None
        tenant.suspended_at = None
        if tenant.subscription_status == "suspended":
            tenant.subscription_status = "trialing" if tenant.plan == "trial" else "active"
        await session.flush()
        self._changed(session, tenant)
        logger.info("Tenant reactivated", extra={"tenant_id": tenant.id})
        return tenant

    async def set_subscription(
        self, session: AsyncSession, tenant: TenantModel, **fields
    ) -> TenantModel:
        """Apply payment-provider state to ``tenant``."""
        for key, value in fields.items():
            if value is not None:
                setattr(tenant, key, value)
        await session.flush()
        self._changed(session, tenant)
        return tenant

    async def dashboard(self, session: AsyncSession) -> dict[str, Any]:
        by_plan = dict((await session.execute(
            select(TenantModel.plan, func.count()).group_by(TenantModel.plan)
        )).all())
        by_status = dict((await session.execute(
            select(TenantModel.subscription_status, func.count())
            .group_by(TenantModel.subscription_status)
        )).all())
        suspended = (await session.execute(
            select(func.count()).select_from(TenantModel).where(TenantModel.is_suspended.is_(True))
        )).scalar_one()
        users = (await session.execute(
            select(func.count()).select_from(UserModel).where(UserModel.is_active.is_(True))
        )).scalar_one()
        revenue = (await session.execute(
            select(func.coalesce(func.sum(TenantModel.monthly_price), 0.0))
            .where(TenantModel.subscription_status == "active")
        )).scalar_one()
        return {
            "tenants": {
                "total": sum(by_plan.values()),
                "byPlan": by_plan,
                "byStatus": by_status,
                "suspended": suspended,
            },
            "users": users,
            "monthlyRevenue": float(revenue),
        }


def _merge_modules(base: dict[str, Any], overrides: Optional[dict[str, Any]]) -> dict[str, Any]:
    merged = {k: dict(v) for k, v in (base or {}).items()}
    for name, value in (overrides or {}).items():
        if isinstance(value, bool):
            value = {"enabled": value}
        entry = merged.setdefault(name, {"enabled": False, "features": []})
        entry.update(value)
    return merged
