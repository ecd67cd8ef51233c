"""Integration tests for the Stripe webhook endpoint."""

import json

from chatdesk.billing.stripe_webhook import sign_payload

WEBHOOK_SECRET = "whsec_test"


async def deliver(client, event: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(event).encode()
    return await client.post("/api/stripe/webhook", content=body, headers={
        "Stripe-Signature": sign_payload(body, secret),
        "Content-Type": "application/json",
    })


class TestStripeWebhook:
    async def test_bad_signature(self, client, db):
        resp = await deliver(client, {"type": "customer.subscription.deleted"}, secret="whsec_other")
        assert resp.status_code == 401
        assert resp.json()["code"] == "INVALID_SIGNATURE"

    async def test_missing_signature(self, client, db):
        resp = await client.post("/api/stripe/webhook", content=b"{}")
        assert resp.status_code == 401

    async def test_invalid_json(self, client, db):
        body = b"not json"
        resp = await client.post("/api/stripe/webhook", content=body, headers={
            "Stripe-Signature": sign_payload(body, WEBHOOK_SECRET),
        })
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"

    async def test_ignored_event(self, client, db):
        resp = await deliver(client, {"type": "charge.refunded", "data": {"object": {}}})
        assert resp.status_code == 200
        assert resp.json()["data"] == {"received": True, "handled": False}

    async def test_checkout_activates_and_upgrades(self, client, make_tenant):
        acme = await make_tenant("acme")
        resp = await deliver(client, {
            "type": "checkout.session.completed",
            "data": {"object": {
                "client_reference_id": acme.id,
                "customer": "cus_1",
                "subscription": "sub_1",
                "metadata": {"plan": "professional", "billing_cycle": "yearly"},
            }},
        })
        assert resp.json()["data"] == {"received": True, "handled": True, "tenantId": acme.id}

        from chatdesk.deps import get_db, get_tenant_service

        async with get_db().get_session() as session:
            tenant = await get_tenant_service().get(session, acme.id)
            assert tenant.plan == "professional"
            assert tenant.billing_cycle == "yearly"
            assert tenant.subscription_status == "active"
            assert tenant.stripe_customer_id == "cus_1"

    async def test_subscription_deleted_by_customer(self, client, db, make_tenant):
        from chatdesk.deps import get_tenant_service

        acme = await make_tenant("acme", plan="starter")
        async with db.get_session() as session:
            tenant = await get_tenant_service().get(session, acme.id)
            await get_tenant_service().set_subscription(session, tenant, stripe_customer_id="cus_9")

        resp = await deliver(client, {
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_9", "customer": "cus_9", "status": "canceled"}},
        })
        assert resp.json()["data"]["tenantId"] == acme.id
        async with db.get_session() as session:
            tenant = await get_tenant_service().get(session, acme.id)
            assert tenant.subscription_status == "cancelled"

    async def test_unknown_tenant(self, client, db):
        resp = await deliver(client, {
            "type": "invoice.payment_failed",
            "data": {"object": {"customer": "cus_nobody"}},
        })
        assert resp.json()["data"]["handled"] is False

    async def test_failed_payment_blocks_requests(self, client, make_tenant, make_user, auth_headers):
        acme = await make_tenant("acme", plan="starter")
        agent = await make_user(acme, "agent")
        await deliver(client, {
            "type": "invoice.payment_failed",
            "data": {"object": {"metadata": {"tenant_id": acme.id}}},
        })
        resp = await client.get("/api/history/conversations", headers=auth_headers(agent))
        assert resp.status_code == 403
        assert resp.json()["code"] == "SUBSCRIPTION_SUSPENDED"
