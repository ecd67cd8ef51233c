"""Quota accountant: plan limits and live usage counters per tenant.

Increments are a single conditional ``UPDATE ... WHERE used + :n <= limit``,
so concurrent callers can never push a counter past its limit. The UPDATE is
the first statement the accountant issues in its transaction. Monthly
counters roll over lazily: the first increment of a new cycle zeroes them.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chatdesk.common.exceptions import PlanLimitError
from chatdesk.common.models import as_utc, utcnow
from chatdesk.tenants.plans import LIMIT_KEYS, MONTHLY_KEYS
from chatdesk.usage.models import TenantQuotaModel

logger = logging.getLogger(__name__)


def cycle_start(now: datetime) -> datetime:
    """Start of the monthly billing cycle containing ``now``."""
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class QuotaAccountant:
    """Check, consume and reset per-tenant usage counters."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    def _stale(self, row: TenantQuotaModel) -> bool:
        """True for a monthly counter last reset before the current cycle."""
        if row.key not in MONTHLY_KEYS:
            return False
        started = as_utc(row.period_start)
        return started is None or started < cycle_start(self._clock())

    async def _row(
        self, session: AsyncSession, tenant_id: str, key: str
    ) -> TenantQuotaModel | None:
        result = await session.execute(
            select(TenantQuotaModel).where(
                TenantQuotaModel.tenant_id == tenant_id,
                TenantQuotaModel.key == key,
            )
        )
        return result.scalar_one_or_none()

    async def set_limits(
        self,
        session: AsyncSession,
        tenant_id: str,
        limits: dict[str, Optional[int]],
        keys: Iterable[str] = LIMIT_KEYS,
    ) -> None:
        """Write the configured limit for every key; absent keys become unbounded."""
        now = self._clock()
        for key in set(keys) | set(limits):
            value = limits.get(key)
            if value is not None and value < 0:
                value = None
            row = await self._row(session, tenant_id, key)
            if row is None:
                session.add(TenantQuotaModel(
                    tenant_id=tenant_id, key=key, limit=value, used=0,
                    period_start=cycle_start(now),
                ))
            else:
                row.limit = value
        await session.flush()

    async def snapshot(self, session: AsyncSession, tenant_id: str) -> dict[str, dict]:
        result = await session.execute(
            select(TenantQuotaModel).where(TenantQuotaModel.tenant_id == tenant_id)
        )
        rows = list(result.scalars().all())
        return {
            "limits": {r.key: r.limit for r in rows if r.limit is not None},
            "usage": {r.key: r.used for r in rows},
        }

    async def limit_of(self, session: AsyncSession, tenant_id: str, key: str) -> Optional[int]:
        row = await self._row(session, tenant_id, key)
        return row.limit if row is not None else None

    async def check(
        self,
        session: AsyncSession,
        tenant_id: str,
        key: str,
        amount: int = 1,
        bypass: bool = False,
    ) -> None:
        """Raise :class:`PlanLimitError` unless ``used + amount <= limit``."""
        if bypass:
            return
        row = await self._row(session, tenant_id, key)
        if row is None or row.limit is None:
            return
        used = 0 if self._stale(row) else row.used
        if used + amount > row.limit:
            raise PlanLimitError(key, row.limit, used)

    async def increment(
        self,
        session: AsyncSession,
        tenant_id: str,
        key: str,
        amount: int = 1,
        bypass: bool = False,
    ) -> None:
        """Atomically add ``amount`` to the counter, re-validating the limit."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        if bypass:
            return
        if key in MONTHLY_KEYS:
            await self.reset_monthly(session, tenant_id)
        quota = TenantQuotaModel
        stmt = (
            update(quota)
            .where(
                quota.tenant_id == tenant_id,
                quota.key == key,
                or_(quota.limit.is_(None), quota.used + amount <= quota.limit),
            )
            .values(used=quota.used + amount, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount == 1:
            return

        row = await self._row(session, tenant_id, key)
        if row is not None:
            logger.info(
                "Quota exhausted",
                extra={"tenant_id": tenant_id, "key": key, "limit": row.limit, "used": row.used},
            )
            raise PlanLimitError(key, row.limit, row.used)

        # No limit configured for this key: start tracking it unbounded.
        try:
            async with session.begin_nested():
                session.add(TenantQuotaModel(
                    tenant_id=tenant_id, key=key, limit=None, used=amount,
                    period_start=cycle_start(self._clock()),
                ))
        except IntegrityError:
            await self.increment(session, tenant_id, key, amount)

    async def consume(
        self,
        session: AsyncSession,
        tenant_id: str,
        key: str,
        amount: int = 1,
        bypass: bool = False,
    ) -> None:
        """Check-and-increment in one step."""
        await self.increment(session, tenant_id, key, amount, bypass=bypass)

    async def release(
        self, session: AsyncSession, tenant_id: str, key: str, amount: int = 1
    ) -> None:
        """Give back units of a gauge counter; never drops below zero."""
        quota = TenantQuotaModel
        await session.execute(
            update(quota)
            .where(quota.tenant_id == tenant_id, quota.key == key)
            .values(
                used=case((quota.used >= amount, quota.used - amount), else_=0),
                updated_at=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )

    async def set_used(
        self, session: AsyncSession, tenant_id: str, key: str, used: int
    ) -> None:
        quota = TenantQuotaModel
        await session.execute(
            update(quota)
            .where(quota.tenant_id == tenant_id, quota.key == key)
            .values(used=max(used, 0), updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )

    async def reset_monthly(
        self,
        session: AsyncSession,
        tenant_id: str,
        force: bool = False,
    ) -> int:
        """Zero the monthly counters once per billing cycle.

        A second call within the same cycle is a no-op unless ``force``.
        Returns the number of counters reset.
        """
        now = self._clock()
        start = cycle_start(now)
        quota = TenantQuotaModel
        stmt = update(quota).where(
            quota.tenant_id == tenant_id,
            quota.key.in_(MONTHLY_KEYS),
        )
        if not force:
            stmt = stmt.where(or_(quota.period_start.is_(None), quota.period_start < start))
        result = await session.execute(
            stmt.values(used=0, period_start=start, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                "Monthly usage reset",
                extra={"tenant_id": tenant_id, "counters": result.rowcount, "forced": force},
            )
        return result.rowcount
