"""Tests for the authorization gate and its check order."""

from datetime import datetime, timedelta, timezone

import pytest

from chatdesk.auth.context import RequestContext
from chatdesk.auth.models import UserModel
from chatdesk.common.exceptions import (
    ModuleDisabledError,
    PermissionDeniedError,
    PlanLimitError,
    SubscriptionExpiredError,
    SubscriptionSuspendedError,
    TenantInactiveError,
    TenantSuspendedError,
    TenantUnidentifiedError,
    UnauthorizedError,
)
from chatdesk.policy.gate import AuthorizationGate
from chatdesk.tenants.models import TenantModel
from chatdesk.usage.accountant import QuotaAccountant

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


def build_tenant(**overrides) -> TenantModel:
    fields = {
        "id": "tenant-1",
        "name": "Acme",
        "slug": "acme",
        "is_active": True,
        "is_suspended": False,
        "subscription_status": "active",
        "trial_ends_at": None,
        "modules": {"chat": {"enabled": True, "features": []}, "crm": {"enabled": False}},
    }
    fields.update(overrides)
    return TenantModel(**fields)


def make_ctx(role="agent", tenant=None, authenticated=True) -> RequestContext:
    if not authenticated:
        return RequestContext(tenant=tenant)
    user = UserModel(id="user-1", role=role, tenant_id=None if role == "master" else "tenant-1",
                     email="u@example.com", name="U", password_hash="!")
    return RequestContext(user=user, tenant=tenant, is_master=role == "master")


@pytest.fixture
def gate():
    return AuthorizationGate(db=None, accountant=QuotaAccountant(), clock=lambda: NOW)


class TestCheckOrder:
    def test_unauthenticated_first(self, gate):
        ctx = make_ctx(authenticated=False, tenant=build_tenant(is_suspended=True))
        with pytest.raises(UnauthorizedError):
            gate.evaluate(ctx, min_role="admin")

    def test_role_before_tenant_state(self, gate):
        ctx = make_ctx(role="client", tenant=build_tenant(is_suspended=True))
        with pytest.raises(PermissionDeniedError):
            gate.evaluate(ctx, min_role="admin")

    def test_tenant_state_before_subscription(self, gate):
        ctx = make_ctx(tenant=build_tenant(is_suspended=True, subscription_status="expired"))
        with pytest.raises(TenantSuspendedError):
            gate.evaluate(ctx)

    def test_subscription_before_module(self, gate):
        ctx = make_ctx(tenant=build_tenant(subscription_status="expired"))
        with pytest.raises(SubscriptionExpiredError):
            gate.evaluate(ctx, module="crm")

    def test_module(self, gate):
        with pytest.raises(ModuleDisabledError) as exc:
            gate.evaluate(make_ctx(tenant=build_tenant()), module="crm")
        assert exc.value.module == "crm"

    def test_all_pass(self, gate):
        gate.evaluate(make_ctx(role="admin", tenant=build_tenant()), min_role="agent", module="chat")


class TestRoles:
    def test_explicit_role_set(self, gate):
        ctx = make_ctx(role="agent", tenant=build_tenant())
        with pytest.raises(PermissionDeniedError):
            gate.evaluate(ctx, roles=("admin", "client"))
        gate.evaluate(ctx, roles=("agent",))

    def test_master_passes_everything(self, gate):
        gate.evaluate(make_ctx(role="master"), min_role="admin", module="hrm")


class TestTenantState:
    def test_inactive(self, gate):
        with pytest.raises(TenantInactiveError):
            gate.evaluate(make_ctx(tenant=build_tenant(is_active=False)))

    def test_missing_tenant(self, gate):
        with pytest.raises(TenantUnidentifiedError):
            gate.evaluate(make_ctx(tenant=None))

    def test_missing_tenant_allowed(self, gate):
        gate.evaluate(make_ctx(tenant=None), tenant_required=False)


class TestSubscription:
    def test_trial_within_window(self, gate):
        tenant = build_tenant(subscription_status="trialing", trial_ends_at=NOW + timedelta(days=1))
        gate.evaluate(make_ctx(tenant=tenant))

    def test_trial_over(self, gate):
        tenant = build_tenant(subscription_status="trialing", trial_ends_at=NOW - timedelta(days=1))
        with pytest.raises(SubscriptionExpiredError):
            gate.evaluate(make_ctx(tenant=tenant))

    def test_naive_trial_end_treated_as_utc(self, gate):
        ends = (NOW + timedelta(hours=1)).replace(tzinfo=None)
        gate.evaluate(make_ctx(tenant=build_tenant(subscription_status="trialing", trial_ends_at=ends)))

    def test_suspended_subscription(self, gate):
        with pytest.raises(SubscriptionSuspendedError):
            gate.evaluate(make_ctx(tenant=build_tenant(subscription_status="suspended")))

    @pytest.mark.parametrize("status", ["cancelled", "expired"])
    def test_ended(self, gate, status):
        with pytest.raises(SubscriptionExpiredError):
            gate.evaluate(make_ctx(tenant=build_tenant(subscription_status=status)))


class TestQuota:
    async def test_quota_checked_last(self, db, make_tenant):
        from chatdesk.deps import get_accountant

        tenant = await make_tenant("acme", limits={"maxConversations": 0})
        gate = AuthorizationGate(db, get_accountant())
        ctx = make_ctx(tenant=tenant)
        with pytest.raises(PlanLimitError) as exc:
            await gate.enforce(ctx, module="chat", quota=("maxConversations", 1))
        assert exc.value.limit == 0

    async def test_module_failure_wins_over_quota(self, db, make_tenant):
        from chatdesk.deps import get_accountant

        tenant = await make_tenant("acme", limits={"maxConversations": 0})
        gate = AuthorizationGate(db, get_accountant())
        with pytest.raises(ModuleDisabledError):
            await gate.enforce(make_ctx(tenant=tenant), module="crm", quota=("maxConversations", 1))

    async def test_master_bypasses_quota(self, db, make_tenant):
        from chatdesk.deps import get_accountant

        tenant = await make_tenant("acme", limits={"maxConversations": 0})
        gate = AuthorizationGate(db, get_accountant())
        ctx = make_ctx(role="master")
        ctx.master_scope = tenant.id
        await gate.enforce(ctx, quota=("maxConversations", 1), tenant_required=False)
