"""Tests for the tenant registry and resolver."""

from types import SimpleNamespace

import pytest

from chatdesk.common.exceptions import (
    TenantInactiveError,
    TenantNotFoundError,
    TenantSuspendedError,
    TenantUnidentifiedError,
)
from chatdesk.tenants.registry import TenantRegistry
from chatdesk.tenants.resolver import TenantResolver, fallback_allowed


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(db, clock):
    return TenantRegistry(db, ttl=300, maxsize=16, clock=clock)


@pytest.fixture
async def acme(make_tenant):
    return await make_tenant("acme")


@pytest.fixture
async def globex(make_tenant):
    return await make_tenant("globex")


def user_of(tenant, role="agent"):
    return SimpleNamespace(id="u1", role=role, tenant_id=tenant.id if tenant else None)


class TestRegistry:
    async def test_find_by_slug_caches(self, registry, acme):
        first = await registry.find_by_slug("acme")
        second = await registry.find_by_slug("ACME")
        assert first.id == second.id == acme.id
        assert registry.loads == 1

    async def test_id_and_slug_share_entry(self, registry, acme):
        await registry.find_by_slug("acme")
        await registry.find_by_id(acme.id)
        assert registry.loads == 1

    async def test_ttl_expiry_reloads(self, registry, clock, acme):
        await registry.find_by_id(acme.id)
        clock.now += 301
        await registry.find_by_id(acme.id)
        assert registry.loads == 2

    async def test_not_found(self, registry):
        with pytest.raises(TenantNotFoundError):
            await registry.find_by_slug("nobody")

    async def test_invalidate_drops_both_keys(self, registry, acme):
        await registry.find_by_id(acme.id)
        registry.invalidate(acme.id)
        await registry.find_by_slug("acme")
        assert registry.loads == 2

    async def test_invalidate_notifies_listeners(self, registry, acme):
        seen = []
        registry.on_invalidate(seen.append)
        registry.invalidate(acme.id, "acme")
        registry.clear()
        assert seen == [acme.id, "*"]

    async def test_suspended_hidden_unless_requested(self, registry, acme):
        from chatdesk.deps import get_db, get_tenant_service

        async with get_db().get_session() as session:
            await get_tenant_service().suspend(session, acme.id, "unpaid")
        with pytest.raises(TenantSuspendedError):
            await registry.find_by_id(acme.id)
        tenant = await registry.find_by_id(acme.id, include_inactive=True)
        assert tenant.is_suspended

    async def test_inactive(self, registry, acme):
        from chatdesk.deps import get_db, get_tenant_service

        async with get_db().get_session() as session:
            await get_tenant_service().update_tenant(session, acme.id, is_active=False)
        with pytest.raises(TenantInactiveError):
            await registry.find_by_slug("acme")

    async def test_domain_or_slug(self, registry, acme):
        assert (await registry.find_by_domain_or_slug("acme")).id == acme.id
        assert (await registry.find_by_domain_or_slug("acme.chatdesk.io")).id == acme.id

    async def test_service_mutation_invalidates_shared_registry(self, acme):
        from chatdesk.deps import get_db, get_registry, get_tenant_service

        registry = get_registry()
        assert (await registry.find_by_id(acme.id)).name == "Acme"
        async with get_db().get_session() as session:
            await get_tenant_service().update_tenant(session, acme.id, name="Acme Corp")
        assert (await registry.find_by_id(acme.id)).name == "Acme Corp"


class TestResolverPrecedence:
    async def test_user_beats_every_other_strategy(self, registry, acme, globex):
        resolver = TenantResolver(registry)
        result = await resolver.resolve(
            user=user_of(acme),
            host="globex.chatdesk.io",
            query={"tenant": "globex"},
            headers={"X-Tenant-Id": globex.id},
        )
        assert result.tenant_id == acme.id
        assert result.strategy == "user"

    async def test_query_beats_subdomain(self, registry, acme, globex):
        result = await TenantResolver(registry).resolve(
            host="globex.chatdesk.io", query={"key": "acme"},
        )
        assert result.tenant_id == acme.id
        assert result.strategy == "query"

    async def test_subdomain_beats_header(self, registry, acme, globex):
        result = await TenantResolver(registry).resolve(
            host="acme.localhost:3000", headers={"X-Tenant-Key": "globex"},
        )
        assert result.tenant_id == acme.id
        assert result.strategy == "subdomain"

    async def test_unknown_subdomain_falls_through_to_header(self, registry, acme):
        result = await TenantResolver(registry).resolve(
            host="nobody.chatdesk.io", headers={"x-tenant-id": acme.id},
        )
        assert result.tenant_id == acme.id
        assert result.strategy == "header"

    async def test_tenant_key_header(self, registry, globex):
        result = await TenantResolver(registry).resolve(headers={"X-Tenant-Key": "globex"})
        assert result.tenant_id == globex.id

    async def test_master_resolves_to_no_tenant(self, registry, acme):
        result = await TenantResolver(registry).resolve(
            user=user_of(None, role="master"), host="acme.chatdesk.io",
            query={"tenantId": acme.id},
        )
        assert result.tenant is None
        assert result.is_master
        assert result.master_scope == acme.id

    async def test_unidentified(self, registry):
        with pytest.raises(TenantUnidentifiedError):
            await TenantResolver(registry).resolve(host="chatdesk.io")

    async def test_not_required(self, registry):
        result = await TenantResolver(registry).resolve(host="chatdesk.io", required=False)
        assert result.tenant is None

    async def test_returns_suspended_tenant_for_the_gate(self, registry, acme):
        from chatdesk.deps import get_db, get_tenant_service

        async with get_db().get_session() as session:
            await get_tenant_service().suspend(session, acme.id, "unpaid")
        result = await TenantResolver(registry).resolve(query={"tenant": "acme"})
        assert result.tenant.is_suspended


class TestFallback:
    async def test_fallback_when_enabled(self, registry, make_tenant):
        default = await make_tenant("default")
        resolver = TenantResolver(registry, fallback_enabled=True)
        result = await resolver.resolve(path="/api/history/conversations")
        assert result.tenant_id == default.id
        assert result.strategy == "fallback"

    async def test_fallback_excluded_paths(self, registry, make_tenant):
        await make_tenant("default")
        resolver = TenantResolver(registry, fallback_enabled=True)
        with pytest.raises(TenantUnidentifiedError):
            await resolver.resolve(path="/api/auth/login")

    async def test_fallback_disabled_by_default(self, registry, make_tenant):
        await make_tenant("default")
        with pytest.raises(TenantUnidentifiedError):
            await TenantResolver(registry).resolve(path="/api/history/conversations")

    def test_fallback_allowed(self):
        assert fallback_allowed("/api/tenants/current")
        assert not fallback_allowed("/api/auth/login/")
        assert not fallback_allowed("/health")
