"""Tenant scope injection over the storage adapter.

Every handler that touches tenant-owned records obtains its handle from
:func:`store_for`. A :class:`ScopedStore` conjoins ``tenant_id == <caller>``
to every filter it forwards, injects ``tenant_id`` on insert and refuses
writes that name another tenant. :class:`UnscopedStore` is the master-only
escape hatch; each call through it is written to the audit log.
"""

import logging
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from chatdesk.auth.context import RequestContext
from chatdesk.common.exceptions import (
    CrossTenantWriteError,
    TenantUnidentifiedError,
    ValidationError,
)
from chatdesk.scoping.adapter import StorageAdapter, field_name

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("chatdesk.scoping.audit")

TENANT_KEYS = frozenset({"tenant_id", "tenantId"})


def scrub_query(params: Mapping[str, Any]) -> dict[str, Any]:
    """Drop caller-supplied tenant selectors from query parameters."""
    return {k: v for k, v in params.items() if k not in TENANT_KEYS}


def _split_tenant(values: Optional[dict]) -> tuple[dict, list]:
    """Return ``(values without tenant keys, tenant values found)``."""
    values = dict(values or {})
    found = [values.pop(k) for k in list(values) if field_name(k) == "tenant_id"]
    return values, found


class ScopedStore:
    """Storage handle bound to one tenant."""

    scoped = True

    def __init__(self, adapter: StorageAdapter, tenant_id: str, actor_id: Optional[str] = None):
        if not tenant_id:
            raise TenantUnidentifiedError()
        self._adapter = adapter
        self.tenant_id = tenant_id
        self.actor_id = actor_id

    def _filter(self, filter: Optional[dict]) -> dict:
        clean, overridden = _split_tenant(filter)
        if overridden:
            logger.info(
                "Dropped tenant selector from filter",
                extra={"tenant_id": self.tenant_id, "user_id": self.actor_id},
            )
        clean["tenant_id"] = self.tenant_id
        return clean

    def _guard_write(self, values: Optional[dict]) -> dict:
        clean, named = _split_tenant(values)
        for tenant_id in named:
            if tenant_id is not None and tenant_id != self.tenant_id:
                logger.warning(
                    "Cross-tenant write refused",
                    extra={"tenant_id": self.tenant_id, "user_id": self.actor_id, "target": tenant_id},
                )
                raise CrossTenantWriteError()
        return clean

    async def find(
        self,
        model,
        filter: Optional[dict] = None,
        *,
        sort: Optional[Sequence[tuple[str, int]]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list:
        return await self._adapter.find(
            model, self._filter(filter), sort=sort, limit=limit, offset=offset
        )

    async def find_one(self, model, filter: Optional[dict] = None):
        return await self._adapter.find_one(model, self._filter(filter))

    async def get(self, model, record_id: str):
        return await self.find_one(model, {"id": record_id})

    async def count(self, model, filter: Optional[dict] = None) -> int:
        return await self._adapter.count(model, self._filter(filter))

    async def insert(self, model, values: dict):
        payload = self._guard_write(values)
        payload["tenant_id"] = self.tenant_id
        return await self._adapter.insert(model, payload)

    async def update(self, model, filter: Optional[dict], values: dict) -> int:
        payload = self._guard_write(values)
        if not payload:
            return 0
        return await self._adapter.update(model, self._filter(filter), payload)

    async def delete(self, model, filter: Optional[dict]) -> int:
        return await self._adapter.delete(model, self._filter(filter))

    async def aggregate(self, model, pipeline: list[dict]) -> list[dict]:
        stages = [dict(stage) for stage in pipeline]
        if stages and "$match" in stages[0]:
            stages[0] = {"$match": self._filter(stages[0]["$match"])}
        else:
            stages.insert(0, {"$match": {"tenant_id": self.tenant_id}})
        for stage in stages[1:]:
            if "$match" in stage:
                stage["$match"] = self._filter(stage["$match"])
        return await self._adapter.aggregate(model, stages)


class UnscopedStore:
    """Cross-tenant handle for master callers."""

    scoped = False

    def __init__(self, adapter: StorageAdapter, actor_id: Optional[str], reason: str = "master"):
        self._adapter = adapter
        self.actor_id = actor_id
        self.reason = reason
        self.tenant_id = None

    def _audit(self, op: str, model, filter: Optional[dict] = None) -> None:
        audit_logger.info(
            "Unscoped %s on %s", op, model.__tablename__,
            extra={"user_id": self.actor_id, "reason": self.reason, "filter": filter or {}},
        )

    async def find(self, model, filter: Optional[dict] = None, **kwargs) -> list:
        self._audit("find", model, filter)
        return await self._adapter.find(model, filter, **kwargs)

    async def find_one(self, model, filter: Optional[dict] = None):
        self._audit("find_one", model, filter)
        return await self._adapter.find_one(model, filter)

    async def get(self, model, record_id: str):
        return await self.find_one(model, {"id": record_id})

    async def count(self, model, filter: Optional[dict] = None) -> int:
        self._audit("count", model, filter)
        return await self._adapter.count(model, filter)

    async def insert(self, model, values: dict):
        _, named = _split_tenant(values)
        if not any(named):
            raise ValidationError("tenantId is required when writing outside a tenant scope")
        self._audit("insert", model, {"tenant_id": named[0]})
        return await self._adapter.insert(model, values)

    async def update(self, model, filter: Optional[dict], values: dict) -> int:
        payload, named = _split_tenant(values)
        if named:
            raise ValidationError("tenantId cannot be changed")
        self._audit("update", model, filter)
        return await self._adapter.update(model, filter, payload)

    async def delete(self, model, filter: Optional[dict]) -> int:
        self._audit("delete", model, filter)
        return await self._adapter.delete(model, filter)

    async def aggregate(self, model, pipeline: list[dict]) -> list[dict]:
        self._audit("aggregate", model, pipeline[0].get("$match") if pipeline else None)
        return await self._adapter.aggregate(model, pipeline)


def store_for(
    ctx: RequestContext,
    session: AsyncSession,
    adapter: Optional[StorageAdapter] = None,
) -> ScopedStore | UnscopedStore:
    """Pick the storage handle matching the caller's scope."""
    adapter = adapter or StorageAdapter(session)
    if ctx.is_master:
        if ctx.master_scope:
            return ScopedStore(adapter, ctx.master_scope, actor_id=ctx.user_id)
        return UnscopedStore(adapter, actor_id=ctx.user_id)
    if ctx.tenant_id is None:
        raise TenantUnidentifiedError()
    return ScopedStore(adapter, ctx.tenant_id, actor_id=ctx.user_id)
