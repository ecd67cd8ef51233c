"""Payment provider webhook endpoint."""

import json
import logging

from fastapi import APIRouter, Request
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatdesk.billing.stripe_webhook import SubscriptionUpdate, translate_event, verify_stripe_signature
from chatdesk.common.exceptions import AuthError, ValidationError
from chatdesk.common.responses import ok
from chatdesk.tenants.models import TenantModel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe", tags=["billing"])


async def _find_tenant(session: AsyncSession, update: SubscriptionUpdate) -> TenantModel | None:
    if update.tenant_id:
        tenant = await session.get(TenantModel, update.tenant_id)
        if tenant is not None:
            return tenant
    clauses = []
    if update.customer_id:
        clauses.append(TenantModel.stripe_customer_id == update.customer_id)
    if update.subscription_id:
        clauses.append(TenantModel.stripe_subscription_id == update.subscription_id)
    if not clauses:
        return None
    result = await session.execute(select(TenantModel).where(or_(*clauses)).limit(1))
    return result.scalar_one_or_none()


async def apply_update(session: AsyncSession, update: SubscriptionUpdate) -> TenantModel | None:
    from chatdesk.deps import get_tenant_service

    service = get_tenant_service()
    tenant = await _find_tenant(session, update)
    if tenant is None:
        logger.warning(
            "Stripe event for unknown tenant",
            extra={"tenant_id": update.tenant_id, "customer": update.customer_id},
        )
        return None
    fields = dict(update.fields)
    plan = fields.pop("plan", None)
    cycle = fields.pop("billing_cycle", None)
    if plan and plan != tenant.plan:
        tenant = await service.change_plan(session, tenant.id, plan, cycle or tenant.billing_cycle)
    return await service.set_subscription(session, tenant, **fields)


@router.post("/webhook")
async def stripe_webhook(request: Request):
    from chatdesk.common.config import get_settings
    from chatdesk.deps import get_db

    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    if not verify_stripe_signature(payload, signature, get_settings().stripe_webhook_secret):
        logger.warning("Rejected Stripe webhook with invalid signature")
        raise AuthError("Invalid webhook signature", code="INVALID_SIGNATURE")

    try:
        event = json.loads(payload)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")

    update = translate_event(event)
    if update is None:
        return ok({"received": True, "handled": False})

    async with get_db().get_session() as session:
        tenant = await apply_update(session, update)
        tenant_id = tenant.id if tenant is not None else None
    logger.info(
        "Stripe event applied",
        extra={"tenant_id": tenant_id, "event_type": event.get("type")},
    )
    return ok({"received": True, "handled": tenant_id is not None, "tenantId": tenant_id})
