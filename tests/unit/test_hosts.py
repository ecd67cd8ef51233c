"""Tests for Host header parsing."""

import pytest

from chatdesk.tenants.hosts import is_ip, strip_port, subdomain_of


class TestSubdomain:
    @pytest.mark.parametrize("host,expected", [
        ("acme.chatdesk.io", "acme"),
        ("ACME.chatdesk.io", "acme"),
        ("acme.chatdesk.io:8443", "acme"),
        ("acme.localhost:3000", "acme"),
        ("acme.localhost", "acme"),
        ("deep.acme.chatdesk.io", "deep"),
    ])
    def test_tenant_label(self, host, expected):
        assert subdomain_of(host) == expected

    @pytest.mark.parametrize("host", [
        "",
        "chatdesk.io",
        "localhost",
        "localhost:5000",
        "127.0.0.1",
        "127.0.0.1:8000",
        "[::1]:8000",
        "www.chatdesk.io",
        "api.chatdesk.io",
    ])
    def test_no_label(self, host):
        assert subdomain_of(host) is None


class TestHelpers:
    def test_strip_port(self):
        assert strip_port("Example.com:80") == "example.com"
        assert strip_port("[::1]:80") == "::1"
        assert strip_port("example.com") == "example.com"

    def test_is_ip(self):
        assert is_ip("10.0.0.1")
        assert is_ip("::1")
        assert not is_ip("acme.io")
