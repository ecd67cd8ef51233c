"""Tests for the API client's retry-after-refresh behavior."""

import asyncio
import json

import httpx
import jwt
import pytest

from chatdesk.client.errors import ClientError, RefreshFailedError
from chatdesk.client.http import ChatdeskClient

NOW = 4_000_000_000


def token(exp: int, sub: str = "u1") -> str:
    return jwt.encode({"sub": sub, "exp": exp}, "client-test-secret", algorithm="HS256")


class FakeApi:
    """Accepts only the most recently issued access token."""

    def __init__(self, current: str):
        self.current = current
        self.refreshes = 0
        self.refresh_ok = True
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/auth/refresh":
            if not self.refresh_ok:
                return httpx.Response(401, json={"success": False, "code": "INVALID_REFRESH", "message": "Revoked"})
            self.refreshes += 1
            self.current = token(NOW + 3600, sub=f"u1-{self.refreshes}")
            return httpx.Response(200, json={"success": True, "data": {
                "token": self.current, "refreshToken": f"refresh-{self.refreshes}",
            }})
        if request.headers.get("authorization") != f"Bearer {self.current}":
            return httpx.Response(401, json={"success": False, "code": "TOKEN_EXPIRED", "message": "Token expired"})
        if request.url.path == "/api/auth/forbidden":
            return httpx.Response(403, json={"success": False, "code": "PERMISSION_DENIED", "message": "No"})
        return httpx.Response(200, json={"success": True, "data": {
            "path": request.url.path, "tenant": request.headers.get("x-tenant-key"),
        }})


@pytest.fixture
def api():
    return FakeApi(current=token(NOW + 3600, sub="server-side"))


@pytest.fixture
async def client(api):
    async with ChatdeskClient("http://test", tenant="acme", transport=httpx.MockTransport(api)) as c:
        yield c


class TestRequests:
    async def test_envelope_data_and_tenant_header(self, client, api):
        client.coordinator.set_tokens(api.current, "refresh-0", schedule=False)
        data = await client.profile()
        assert data == {"path": "/api/auth/profile", "tenant": "acme"}

    async def test_server_side_expiry_retries_once(self, client, api):
        client.coordinator.set_tokens(token(NOW + 3600, sub="stale"), "refresh-0", schedule=False)
        data = await client.profile()
        assert data["path"] == "/api/auth/profile"
        assert api.refreshes == 1
        assert [r.url.path for r in api.requests] == [
            "/api/auth/profile", "/api/auth/refresh", "/api/auth/profile",
        ]
        assert json.loads(api.requests[1].content) == {"refreshToken": "refresh-0"}

    async def test_client_side_expiry_shares_one_refresh(self, client, api):
        expired = token(1)
        client.coordinator.set_tokens(expired, "refresh-0", schedule=False)
        results = await asyncio.gather(*(client.profile() for _ in range(10)))
        assert api.refreshes == 1
        assert all(r["path"] == "/api/auth/profile" for r in results)

    async def test_other_errors_are_raised(self, client, api):
        client.coordinator.set_tokens(api.current, "refresh-0", schedule=False)
        with pytest.raises(ClientError) as exc:
            await client.request("GET", "/auth/forbidden")
        assert exc.value.code == "PERMISSION_DENIED"
        assert api.refreshes == 0

    async def test_refresh_failure_logs_out(self, client, api):
        api.refresh_ok = False
        client.coordinator.set_tokens(token(NOW + 3600, sub="stale"), "refresh-0", schedule=False)
        with pytest.raises(RefreshFailedError):
            await client.profile()
        assert not client.coordinator.is_authenticated

    async def test_login_stores_tokens(self, api):
        def handler(request):
            if request.url.path == "/api/auth/login":
                return httpx.Response(200, json={"success": True, "data": {
                    "token": api.current, "refreshToken": "refresh-0", "user": {"id": "u1"},
                }})
            return api(request)

        async with ChatdeskClient("http://test", transport=httpx.MockTransport(handler)) as c:
            data = await c.login("a@acme.io", "pw")
            assert data["user"] == {"id": "u1"}
            assert c.coordinator.refresh_token == "refresh-0"
            assert (await c.profile())["path"] == "/api/auth/profile"
