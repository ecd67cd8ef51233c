"""SQLAlchemy model for per-tenant quota counters."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chatdesk.common.models import Base, TimestampMixin, generate_uuid


class TenantQuotaModel(Base, TimestampMixin):
    """One row per (tenant, limit key).

    ``limit`` NULL means unbounded; 0 means the resource is not allowed.
    """

    __tablename__ = "tenant_quotas"
    __table_args__ = (UniqueConstraint("tenant_id", "key", name="uq_tenant_quota_key"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tenants.id"), nullable=False, index=True
    )
    key: Mapped[str] = mapped_column(String(50), nullable=False)
    limit: Mapped[Optional[int]] = mapped_column("limit_value", Integer, nullable=True)
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
