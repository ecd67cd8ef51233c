"""Map an inbound request to a tenant.

Strategies, first match wins:

1. the authenticated user's tenant (masters resolve to no tenant)
2. ``?key=`` / ``?tenant=`` query parameter (slug)
3. the Host subdomain
4. ``X-Tenant-Id`` (id) or ``X-Tenant-Key`` (slug) header
5. the default tenant, when enabled and the path is not login or health
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from chatdesk.auth.roles import is_master
from chatdesk.common.exceptions import TenantNotFoundError, TenantUnidentifiedError
from chatdesk.tenants.hosts import subdomain_of
from chatdesk.tenants.models import TenantModel
from chatdesk.tenants.registry import TenantRegistry

logger = logging.getLogger(__name__)

FALLBACK_EXCLUDED_SUFFIXES = ("/auth/login", "/health")


@dataclass(frozen=True)
class Resolution:
    tenant: Optional[TenantModel]
    strategy: Optional[str]
    is_master: bool = False
    master_scope: Optional[str] = None

    @property
    def tenant_id(self) -> Optional[str]:
        return self.tenant.id if self.tenant is not None else None


def fallback_allowed(path: str) -> bool:
    path = path.rstrip("/")
    return not any(path.endswith(suffix) for suffix in FALLBACK_EXCLUDED_SUFFIXES)


class TenantResolver:
    def __init__(
        self,
        registry: TenantRegistry,
        fallback_enabled: bool = False,
        default_slug: str = "default",
    ):
        self._registry = registry
        self.fallback_enabled = fallback_enabled
        self.default_slug = default_slug

    async def resolve(
        self,
        *,
        user=None,
        host: str = "",
        query: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        path: str = "/",
        required: bool = True,
    ) -> Resolution:
        """Resolve the tenant; raise ``TENANT_UNIDENTIFIED`` if ``required`` and none match.

        Suspended and inactive tenants are returned; the authorization gate
        decides what to do with them.
        """
        query = query or {}
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        registry = self._registry

        if user is not None:
            if is_master(user.role):
                return Resolution(
                    tenant=None, strategy="user", is_master=True,
                    master_scope=query.get("tenantId") or None,
                )
            if user.tenant_id:
                tenant = await registry.find_by_id(user.tenant_id, include_inactive=True)
                return Resolution(tenant=tenant, strategy="user")

        slug = query.get("key") or query.get("tenant")
        if slug:
            tenant = await registry.find_by_slug(slug, include_inactive=True)
            return Resolution(tenant=tenant, strategy="query")

        label = subdomain_of(host)
        if label:
            try:
                tenant = await registry.find_by_slug(label, include_inactive=True)
            except TenantNotFoundError:
                logger.debug("Subdomain matched no tenant", extra={"host": host})
            else:
                return Resolution(tenant=tenant, strategy="subdomain")

        if headers.get("x-tenant-id"):
            tenant = await registry.find_by_id(headers["x-tenant-id"], include_inactive=True)
            return Resolution(tenant=tenant, strategy="header")
        if headers.get("x-tenant-key"):
            tenant = await registry.find_by_slug(headers["x-tenant-key"], include_inactive=True)
            return Resolution(tenant=tenant, strategy="header")

        if self.fallback_enabled and fallback_allowed(path):
            try:
                tenant = await registry.find_by_slug(self.default_slug, include_inactive=True)
            except TenantNotFoundError:
                logger.warning("Default tenant fallback enabled but '%s' does not exist", self.default_slug)
            else:
                return Resolution(tenant=tenant, strategy="fallback")

        if required:
            raise TenantUnidentifiedError()
        return Resolution(tenant=None, strategy=None)
