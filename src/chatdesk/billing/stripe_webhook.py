"""Stripe webhook verification and subscription event translation."""

import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE = 300

HANDLED_EVENTS = frozenset({
    "checkout.session.completed",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
})

# Stripe subscription status -> tenant subscription status
_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "suspended",
    "unpaid": "suspended",
    "paused": "suspended",
    "incomplete": "suspended",
    "canceled": "cancelled",
    "incomplete_expired": "expired",
}


def verify_stripe_signature(
    payload: bytes,
    signature_header: str,
    webhook_secret: str,
    tolerance: int = SIGNATURE_TOLERANCE,
    now: Optional[float] = None,
) -> bool:
    """Verify a ``Stripe-Signature: t=<ts>,v1=<hex>`` header."""
    if not signature_header or not webhook_secret:
        return False

    timestamp = ""
    signatures = []
    for item in signature_header.split(","):
        key, _, value = item.partition("=")
        key = key.strip()
        if key == "t":
            timestamp = value.strip()
        elif key == "v1":
            signatures.append(value.strip())
    if not timestamp or not signatures:
        return False
    try:
        issued = int(timestamp)
    except ValueError:
        return False
    if tolerance and abs((now if now is not None else time.time()) - issued) > tolerance:
        return False

    signed_payload = f"{timestamp}.".encode() + payload
    computed = hmac.new(webhook_secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(computed, sig) for sig in signatures)


def sign_payload(payload: bytes, webhook_secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        webhook_secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


class SubscriptionUpdate(NamedTuple):
    """Tenant lookup keys plus the ``subscription.*`` fields to apply."""

    tenant_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    fields: dict[str, Any]


def _ts(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def translate_event(event: dict[str, Any]) -> Optional[SubscriptionUpdate]:
    """Map a Stripe event onto tenant subscription fields; None for ignored events."""
    event_type = event.get("type", "")
    if event_type not in HANDLED_EVENTS:
        logger.debug("Ignoring Stripe event type: %s", event_type)
        return None

    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata") or {}
    tenant_id = metadata.get("tenant_id") or metadata.get("tenantId") or obj.get("client_reference_id")
    customer_id = obj.get("customer")

    if event_type == "checkout.session.completed":
        fields: dict[str, Any] = {
            "subscription_status": "active",
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": obj.get("subscription"),
        }
        if metadata.get("plan"):
            fields["plan"] = metadata["plan"]
        if metadata.get("billing_cycle"):
            fields["billing_cycle"] = metadata["billing_cycle"]
        return SubscriptionUpdate(tenant_id, customer_id, obj.get("subscription"), fields)

    if event_type.startswith("customer.subscription."):
        status = "cancelled" if event_type.endswith(".deleted") else _STATUS_MAP.get(obj.get("status", ""), "suspended")
        fields = {
            "subscription_status": status,
            "stripe_subscription_id": obj.get("id"),
            "current_period_start": _ts(obj.get("current_period_start")),
            "current_period_end": _ts(obj.get("current_period_end")),
        }
        return SubscriptionUpdate(tenant_id, customer_id, obj.get("id"), fields)

    # invoice.payment_succeeded / invoice.payment_failed
    succeeded = event_type == "invoice.payment_succeeded"
    fields = {"subscription_status": "active" if succeeded else "suspended"}
    if succeeded:
        period = ((obj.get("lines") or {}).get("data") or [{}])[0].get("period") or {}
        fields["current_period_start"] = _ts(period.get("start"))
        fields["current_period_end"] = _ts(period.get("end"))
    return SubscriptionUpdate(tenant_id, customer_id, obj.get("subscription"), fields)
