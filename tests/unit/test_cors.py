"""Tests for per-tenant CORS allow-lists."""

from types import SimpleNamespace

import pytest

from chatdesk.cors.policy import (
    CorsPolicy,
    is_valid_pattern,
    origin_matches,
    suggest_pattern,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def tenant(tenant_id="t1", origins=()):
    return SimpleNamespace(id=tenant_id, allowed_origins=list(origins))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy(clock):
    return CorsPolicy(clock=clock, suggestion_threshold=3)


class TestMatching:
    @pytest.mark.parametrize(
        "origin,pattern,expected",
        [
            ("https://app.example.com", "https://app.example.com", True),
            ("https://APP.example.com/", "https://app.example.com", True),
            ("http://app.example.com", "https://app.example.com", False),
            ("https://foo.internal.example", "*.internal.example", True),
            ("https://a.b.internal.example", "*.internal.example", True),
            ("https://internal.example", "*.internal.example", False),
            ("https://evilinternal.example", "*.internal.example", False),
            ("https://app.example.com.evil", "https://app.example.com", False),
            ("https://app.example.com.evil", "*.example.com", False),
            ("http://localhost:4200", "http://localhost:*", True),
            ("http://localhost", "http://localhost:*", False),
            ("https://localhost:4200", "http://localhost:*", False),
            ("https://anything.io", "*", True),
            ("", "*", False),
        ],
    )
    def test_origin_matches(self, origin, pattern, expected):
        assert origin_matches(origin, pattern) is expected

    @pytest.mark.parametrize(
        "pattern,valid",
        [
            ("https://app.example.com", True),
            ("http://localhost:3000", True),
            ("http://localhost:*", True),
            ("*.example.com", True),
            ("*", True),
            ("ftp://example.com", False),
            ("example.com", False),
            ("https://*.example.com", False),
            ("*.-bad.com", False),
        ],
    )
    def test_is_valid_pattern(self, pattern, valid):
        assert is_valid_pattern(pattern) is valid

    def test_suggest_pattern(self):
        assert suggest_pattern("https://app.shop.example.com") == "*.example.com"
        assert suggest_pattern("http://localhost:4000") == "http://localhost:*"
        assert suggest_pattern("https://example.com") == "https://example.com"


class TestDecisions:
    def test_suffix_wildcard_allows_and_lookalike_blocked(self, policy):
        acme = tenant(origins=["https://app.example.com", "*.internal.example"])
        allowed = policy.evaluate("https://foo.internal.example", acme)
        blocked = policy.evaluate("https://app.example.com.evil", acme)
        assert allowed.allowed and allowed.matched == "*.internal.example"
        assert not blocked.allowed
        assert policy.blocked_count("t1", "https://app.example.com.evil") == 1
        assert policy.blocked_count("t1", "https://foo.internal.example") == 0

    def test_other_tenant_list_does_not_apply(self, policy):
        acme = tenant("t1", ["https://acme.io"])
        globex = tenant("t2", ["https://globex.io"])
        assert policy.evaluate("https://acme.io", acme).allowed
        assert not policy.evaluate("https://acme.io", globex).allowed

    def test_repeated_evaluation_is_stable(self, policy):
        acme = tenant(origins=["https://acme.io"])
        decisions = {policy.evaluate("https://acme.io", acme) for _ in range(3)}
        assert len(decisions) == 1
        assert policy.stats("t1")["allowed"] == [{"origin": "https://acme.io", "count": 3}]

    def test_invalidate_picks_up_new_list(self, policy):
        acme = tenant(origins=[])
        assert not policy.evaluate("https://acme.io", acme).allowed
        acme.allowed_origins = ["https://acme.io"]
        assert not policy.evaluate("https://acme.io", acme).allowed
        policy.invalidate("t1")
        assert policy.evaluate("https://acme.io", acme).allowed

    def test_invalidate_star_clears_everything(self, policy):
        acme = tenant(origins=[])
        policy.evaluate("https://acme.io", acme)
        acme.allowed_origins = ["https://acme.io"]
        policy.invalidate("*")
        assert policy.evaluate("https://acme.io", acme).allowed

    def test_decisions_expire(self, policy, clock):
        acme = tenant(origins=[])
        policy.evaluate("https://acme.io", acme)
        acme.allowed_origins = ["https://acme.io"]
        clock.now += 61
        assert policy.evaluate("https://acme.io", acme).allowed

    def test_no_tenant_uses_fallback(self, clock):
        policy = CorsPolicy(fallback_origins=["https://chatdesk.io"], clock=clock)
        assert policy.evaluate("https://chatdesk.io", None).allowed
        assert not policy.evaluate("https://acme.io", None).allowed

    def test_development_origins(self, clock):
        policy = CorsPolicy(development=True, clock=clock)
        assert policy.evaluate("http://localhost:5173", tenant()).allowed


class TestHeaders:
    def test_echoes_origin_never_star(self, policy):
        decision = policy.evaluate("https://any.io", tenant(origins=["*"]))
        headers = policy.response_headers(decision)
        assert headers["Access-Control-Allow-Origin"] == "https://any.io"
        assert headers["Access-Control-Allow-Credentials"] == "true"
        assert "Retry-After" in headers["Access-Control-Expose-Headers"]

    def test_preflight_headers(self, policy):
        decision = policy.evaluate("https://acme.io", tenant(origins=["https://acme.io"]))
        headers = policy.response_headers(decision, preflight=True)
        assert "PATCH" in headers["Access-Control-Allow-Methods"]
        assert "X-Tenant-Id" in headers["Access-Control-Allow-Headers"]
        assert headers["Access-Control-Max-Age"] == "600"

    def test_blocked_gets_no_allow_headers(self, policy):
        decision = policy.evaluate("https://evil.io", tenant())
        assert policy.response_headers(decision) == {"Vary": "Origin"}


class TestObservability:
    def test_suggestions_after_threshold(self, policy):
        acme = tenant()
        for _ in range(3):
            policy.evaluate("https://shop.acme.io", acme)
        policy.evaluate("https://once.io", acme)
        assert policy.suggestions("t1") == [
            {"origin": "https://shop.acme.io", "blockedCount": 3, "suggestion": "*.acme.io"}
        ]

    def test_global_stats_and_clear(self, policy):
        policy.evaluate("https://evil.io", tenant("t1"))
        policy.evaluate("https://evil.io", tenant("t2"))
        stats = policy.stats()
        assert stats["totalBlocked"] == 2
        assert stats["recentBlocked"][0] == {"tenantId": "t2", "origin": "https://evil.io"}
        policy.clear_stats("t2")
        assert policy.stats()["totalBlocked"] == 1
        policy.clear_stats()
        assert policy.stats()["totalBlocked"] == 0

    def test_health(self, policy):
        policy.evaluate("https://acme.io", tenant())
        health = policy.health()
        assert health["status"] == "healthy"
        assert health["trackedTenants"] == 1
