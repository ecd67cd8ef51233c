"""Tests for Stripe signature checks and event translation."""

import json
from datetime import datetime, timezone

import pytest

from chatdesk.billing.stripe_webhook import (
    sign_payload,
    translate_event,
    verify_stripe_signature,
)

SECRET = "whsec_test"
NOW = 1_760_000_000


@pytest.fixture
def payload():
    return json.dumps({"type": "customer.subscription.deleted"}).encode()


class TestSignature:
    def test_valid(self, payload):
        header = sign_payload(payload, SECRET, timestamp=NOW)
        assert verify_stripe_signature(payload, header, SECRET, now=NOW + 10)

    def test_tampered_body(self, payload):
        header = sign_payload(payload, SECRET, timestamp=NOW)
        assert not verify_stripe_signature(payload + b" ", header, SECRET, now=NOW)

    def test_wrong_secret(self, payload):
        header = sign_payload(payload, "whsec_other", timestamp=NOW)
        assert not verify_stripe_signature(payload, header, SECRET, now=NOW)

    def test_outside_tolerance(self, payload):
        header = sign_payload(payload, SECRET, timestamp=NOW)
        assert not verify_stripe_signature(payload, header, SECRET, now=NOW + 301)

    def test_any_v1_may_match(self, payload):
        good = sign_payload(payload, SECRET, timestamp=NOW).split("v1=")[1]
        header = f"t={NOW},v1=deadbeef,v1={good}"
        assert verify_stripe_signature(payload, header, SECRET, now=NOW)

    @pytest.mark.parametrize("header", ["", "v1=abc", f"t={NOW}", "t=soon,v1=abc"])
    def test_malformed(self, payload, header):
        assert not verify_stripe_signature(payload, header, SECRET, now=NOW)

    def test_no_secret_configured(self, payload):
        header = sign_payload(payload, SECRET, timestamp=NOW)
        assert not verify_stripe_signature(payload, header, "", now=NOW)


class TestTranslate:
    def test_checkout_completed(self):
        update = translate_event({
            "type": "checkout.session.completed",
            "data": {"object": {
                "customer": "cus_1",
                "subscription": "sub_1",
                "client_reference_id": "tenant-1",
                "metadata": {"plan": "professional", "billing_cycle": "yearly"},
            }},
        })
        assert update.tenant_id == "tenant-1"
        assert update.fields == {
            "subscription_status": "active",
            "stripe_customer_id": "cus_1",
            "stripe_subscription_id": "sub_1",
            "plan": "professional",
            "billing_cycle": "yearly",
        }

    def test_subscription_deleted_is_cancelled(self):
        update = translate_event({
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_1", "customer": "cus_1", "status": "active"}},
        })
        assert update.customer_id == "cus_1"
        assert update.fields["subscription_status"] == "cancelled"

    @pytest.mark.parametrize(
        "stripe_status,expected",
        [("active", "active"), ("past_due", "suspended"), ("canceled", "cancelled"), ("weird", "suspended")],
    )
    def test_subscription_updated_status(self, stripe_status, expected):
        update = translate_event({
            "type": "customer.subscription.updated",
            "data": {"object": {
                "id": "sub_1",
                "status": stripe_status,
                "metadata": {"tenant_id": "tenant-1"},
                "current_period_end": NOW,
            }},
        })
        assert update.fields["subscription_status"] == expected
        assert update.fields["current_period_end"] == datetime.fromtimestamp(NOW, tz=timezone.utc)

    def test_invoice_events(self):
        paid = translate_event({
            "type": "invoice.payment_succeeded",
            "data": {"object": {"subscription": "sub_1", "lines": {"data": [{"period": {"start": NOW, "end": NOW + 86400}}]}}},
        })
        failed = translate_event({"type": "invoice.payment_failed", "data": {"object": {"subscription": "sub_1"}}})
        assert paid.fields["subscription_status"] == "active"
        assert paid.fields["current_period_start"] == datetime.fromtimestamp(NOW, tz=timezone.utc)
        assert failed.fields == {"subscription_status": "suspended"}
        assert failed.subscription_id == "sub_1"

    def test_ignored_event(self):
        assert translate_event({"type": "charge.refunded", "data": {"object": {}}}) is None
