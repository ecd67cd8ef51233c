"""Pydantic schemas for tenant endpoints."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import Field

from chatdesk.common.schemas import CamelModel

SLUG_PATTERN = r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$"

PlanName = Literal["trial", "starter", "professional", "enterprise"]
SubscriptionStatus = Literal["active", "suspended", "cancelled", "expired", "trialing"]
BillingCycle = Literal["monthly", "yearly"]


class TenantPublic(CamelModel):
    """What anonymous visitors may see."""
    id: str
    name: str
    slug: str
    branding: dict[str, Any] = {}


class TenantSummary(TenantPublic):
    plan: str
    subscription_status: str
    is_active: bool
    is_suspended: bool
    modules: dict[str, Any] = {}
    settings: dict[str, Any] = {}


class TenantResponse(TenantSummary):
    email: Optional[str] = None
    suspended_reason: Optional[str] = None
    billing_cycle: str
    trial_ends_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    monthly_price: float = 0.0
    allowed_origins: list[str] = []
    owner_id: Optional[str] = None
    created_at: datetime
    limits: dict[str, int] = {}
    usage: dict[str, int] = {}


class TenantCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(None, min_length=2, max_length=100, pattern=SLUG_PATTERN)
    email: Optional[str] = None
    plan: PlanName = "trial"
    billing_cycle: BillingCycle = "monthly"
    limits: Optional[dict[str, Optional[int]]] = None
    modules: Optional[dict[str, Any]] = None
    allowed_origins: list[str] = []
    owner_email: Optional[str] = None
    owner_name: Optional[str] = None
    owner_password: Optional[str] = Field(None, min_length=8)


class TenantUpdate(CamelModel):
    """Fields a tenant admin may change on their own tenant."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[str] = None
    branding: Optional[dict[str, Any]] = None
    settings: Optional[dict[str, Any]] = None


class MasterTenantUpdate(TenantUpdate):
    limits: Optional[dict[str, Optional[int]]] = None
    modules: Optional[dict[str, Any]] = None
    subscription_status: Optional[SubscriptionStatus] = None
    billing_cycle: Optional[BillingCycle] = None
    is_active: Optional[bool] = None


class ToggleModuleRequest(CamelModel):
    module: str
    enabled: Optional[bool] = None
    features: Optional[list[str]] = None


class ChangePlanRequest(CamelModel):
    plan: PlanName
    billing_cycle: BillingCycle = "monthly"


class SuspendRequest(CamelModel):
    reason: str = Field("Suspended by administrator", max_length=500)


class ImpersonateRequest(CamelModel):
    tenant_id: str


class TenantUserCreate(CamelModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(..., min_length=8)
    name: str = Field(..., min_length=1, max_length=255)
    role: Literal["admin", "agent", "client"] = "agent"


class UsageResponse(CamelModel):
    tenant_id: str
    plan: str
    limits: dict[str, int]
    usage: dict[str, int]
