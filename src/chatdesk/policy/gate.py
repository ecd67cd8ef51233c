"""Authorization gate.

Checks run in a fixed order and stop at the first failure:

1. authenticated
2. role (hierarchy master > admin > agent > client; master always passes)
3. tenant active and not suspended
4. subscription active, or trialing inside the trial window
5. required module enabled
6. required quota headroom
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from fastapi import Depends

from chatdesk.auth.context import RequestContext
from chatdesk.auth.roles import Role, at_least
from chatdesk.common.database import DatabaseManager
from chatdesk.common.exceptions import (
    ModuleDisabledError,
    PermissionDeniedError,
    SubscriptionExpiredError,
    SubscriptionSuspendedError,
    TenantInactiveError,
    TenantSuspendedError,
    TenantUnidentifiedError,
    UnauthorizedError,
)
from chatdesk.common.models import as_utc, utcnow
from chatdesk.tenants.models import TenantModel
from chatdesk.usage.accountant import QuotaAccountant

logger = logging.getLogger(__name__)


def check_tenant_state(tenant: TenantModel) -> None:
    if tenant.is_suspended:
        raise TenantSuspendedError(reason=tenant.suspended_reason)
    if not tenant.is_active:
        raise TenantInactiveError()


def check_subscription(tenant: TenantModel, now: datetime) -> None:
    status = tenant.subscription_status
    if status == "active":
        return
    if status == "trialing":
        ends = as_utc(tenant.trial_ends_at)
        if ends is None or ends > now:
            return
        raise SubscriptionExpiredError("Your trial has ended; choose a plan to continue")
    if status == "suspended":
        raise SubscriptionSuspendedError()
    raise SubscriptionExpiredError()


class AuthorizationGate:
    def __init__(
        self,
        db: DatabaseManager,
        accountant: QuotaAccountant,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db
        self._accountant = accountant
        self._clock = clock

    def evaluate(
        self,
        ctx: RequestContext,
        *,
        min_role: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        module: Optional[str] = None,
        tenant_required: bool = True,
    ) -> None:
        """Run checks 1-5 synchronously against the context."""
        if not ctx.is_authenticated:
            raise UnauthorizedError()

        if ctx.is_master:
            return

        role = ctx.role
        if roles is not None and role not in {Role(r).value for r in roles}:
            raise PermissionDeniedError()
        if min_role is not None and not at_least(role, min_role):
            raise PermissionDeniedError()

        tenant = ctx.tenant
        if tenant is None:
            if tenant_required:
                raise TenantUnidentifiedError()
            return
        check_tenant_state(tenant)
        check_subscription(tenant, self._clock())

        if module is not None and not tenant.module_enabled(module):
            raise ModuleDisabledError(module)

    async def enforce(
        self,
        ctx: RequestContext,
        *,
        min_role: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        module: Optional[str] = None,
        quota: Optional[tuple[str, int]] = None,
        tenant_required: bool = True,
    ) -> None:
        self.evaluate(
            ctx, min_role=min_role, roles=roles, module=module,
            tenant_required=tenant_required,
        )
        if quota is not None and not ctx.is_master and ctx.tenant_id:
            key, amount = quota
            async with self._db.get_session() as session:
                await self._accountant.check(session, ctx.tenant_id, key, amount)


def require(
    min_role: Optional[str] = None,
    *,
    roles: Optional[Iterable[str]] = None,
    module: Optional[str] = None,
    quota: Optional[tuple[str, int]] = None,
    tenant_required: bool = True,
):
    """FastAPI dependency factory returning the gated :class:`RequestContext`."""
    from chatdesk.auth.dependencies import current_context

    accepted = tuple(roles) if roles is not None else None

    async def _dependency(ctx: RequestContext = Depends(current_context)) -> RequestContext:
        from chatdesk.deps import get_gate

        await get_gate().enforce(
            ctx, min_role=min_role, roles=accepted, module=module, quota=quota,
            tenant_required=tenant_required,
        )
        return ctx

    return _dependency


def require_master():
    return require(roles=(Role.master.value,), tenant_required=False)
