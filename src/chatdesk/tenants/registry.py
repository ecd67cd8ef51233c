"""Read-through tenant cache keyed by id and slug."""

import logging
from typing import Callable, Optional

from sqlalchemy import select

from chatdesk.common.cache import TTLCache
from chatdesk.common.database import DatabaseManager
from chatdesk.common.exceptions import (
    TenantInactiveError,
    TenantNotFoundError,
    TenantSuspendedError,
)
from chatdesk.tenants.hosts import subdomain_of
from chatdesk.tenants.models import TenantModel

logger = logging.getLogger(__name__)


def ensure_available(tenant: TenantModel) -> TenantModel:
    """Raise the tenant-state error for suspended or inactive tenants."""
    if tenant.is_suspended:
        raise TenantSuspendedError(reason=tenant.suspended_reason)
    if not tenant.is_active:
        raise TenantInactiveError()
    return tenant


class TenantRegistry:
    """Caches tenant records for ``ttl`` seconds, at most ``maxsize`` entries.

    Records handed out are detached snapshots; mutate tenants through a
    session and call :meth:`invalidate` afterwards.
    """

    def __init__(
        self,
        db: DatabaseManager,
        ttl: float = 300,
        maxsize: int = 1024,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._db = db
        kwargs = {"clock": clock} if clock else {}
        self._cache: TTLCache[TenantModel] = TTLCache(maxsize=maxsize, ttl=ttl, **kwargs)
        self._listeners: list[Callable[[str], None]] = []
        self.loads = 0

    def on_invalidate(self, callback: Callable[[str], None]) -> None:
        self._listeners.append(callback)

    def _remember(self, tenant: TenantModel) -> TenantModel:
        self._cache.set(("id", tenant.id), tenant)
        self._cache.set(("slug", tenant.slug), tenant)
        return tenant

    async def _load(self, clause) -> TenantModel | None:
        self.loads += 1
        async with self._db.get_session() as session:
            result = await session.execute(select(TenantModel).where(clause))
            return result.scalar_one_or_none()

    async def find_by_id(self, tenant_id: str, include_inactive: bool = False) -> TenantModel:
        tenant = self._cache.get(("id", tenant_id))
        if tenant is None:
            tenant = await self._load(TenantModel.id == tenant_id)
            if tenant is None:
                raise TenantNotFoundError()
            self._remember(tenant)
        return tenant if include_inactive else ensure_available(tenant)

    async def find_by_slug(self, slug: str, include_inactive: bool = False) -> TenantModel:
        slug = slug.strip().lower()
        tenant = self._cache.get(("slug", slug))
        if tenant is None:
            tenant = await self._load(TenantModel.slug == slug)
            if tenant is None:
                raise TenantNotFoundError()
            self._remember(tenant)
        return tenant if include_inactive else ensure_available(tenant)

    async def find_by_domain_or_slug(
        self, value: str, include_inactive: bool = False
    ) -> TenantModel:
        """Accept either a bare slug or a host whose leftmost label is the slug."""
        value = value.strip().lower()
        label = subdomain_of(value) if "." in value or ":" in value else value
        if not label:
            raise TenantNotFoundError()
        return await self.find_by_slug(label, include_inactive=include_inactive)

    def invalidate(self, tenant_id: str, slug: Optional[str] = None) -> None:
        cached = self._cache.get(("id", tenant_id))
        self._cache.pop(("id", tenant_id))
        for known_slug in {slug, getattr(cached, "slug", None)} - {None}:
            self._cache.pop(("slug", known_slug))
        self._cache.discard_where(lambda key, t: t.id == tenant_id)
        logger.debug("Tenant cache invalidated", extra={"tenant_id": tenant_id})
        for callback in self._listeners:
            callback(tenant_id)

    def clear(self) -> None:
        self._cache.clear()
        for callback in self._listeners:
            callback("*")

    def stats(self) -> dict:
        return {**self._cache.stats(), "loads": self.loads}
