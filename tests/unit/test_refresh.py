"""Tests for single-flight token refresh."""

import asyncio

import jwt
import pytest

from chatdesk.client.errors import ClientError, RefreshFailedError
from chatdesk.client.refresh import (
    RefreshCoordinator,
    get_coordinator,
    init_coordinator,
    teardown_coordinator,
)

NOW = 1_800_000_000.0


def token_expiring_at(exp: float, sub: str = "u1") -> str:
    return jwt.encode({"sub": sub, "exp": int(exp)}, "client-test-secret", algorithm="HS256")


class FakeBackend:
    """Refresh endpoint stand-in; holds every call until released."""

    def __init__(self, fail: bool = False):
        self.calls: list[str] = []
        self.release = asyncio.Event()
        self.fail = fail

    async def __call__(self, refresh_token: str) -> tuple[str, str]:
        self.calls.append(refresh_token)
        await self.release.wait()
        if self.fail:
            raise ClientError(401, {"code": "INVALID_REFRESH", "message": "Refresh token revoked"})
        return token_expiring_at(NOW + 900, sub=f"fresh-{len(self.calls)}"), f"refresh-{len(self.calls)}"


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
async def coordinator(backend):
    logouts = []
    coord = RefreshCoordinator(backend, on_logout=lambda: logouts.append(True), clock=lambda: NOW)
    coord.logouts = logouts
    coord.set_tokens(token_expiring_at(NOW - 5), "refresh-0", schedule=False)
    yield coord
    coord.clear()


class TestSingleFlight:
    async def test_concurrent_callers_share_one_refresh(self, coordinator, backend):
        waiters = [asyncio.ensure_future(coordinator.refresh()) for _ in range(10)]
        await asyncio.sleep(0)
        assert coordinator.is_refreshing
        backend.release.set()
        tokens = await asyncio.gather(*waiters)
        assert backend.calls == ["refresh-0"]
        assert len(set(tokens)) == 1
        assert coordinator.access_token == tokens[0]
        assert coordinator.refresh_token == "refresh-1"
        assert not coordinator.is_refreshing

    async def test_valid_token_refreshes_expired(self, coordinator, backend):
        backend.release.set()
        results = await asyncio.gather(*(coordinator.valid_token() for _ in range(5)))
        assert len(backend.calls) == 1
        assert len(set(results)) == 1

    async def test_valid_token_keeps_live_token(self, backend):
        coord = RefreshCoordinator(backend, clock=lambda: NOW)
        live = token_expiring_at(NOW + 600)
        coord.set_tokens(live, "refresh-0", schedule=False)
        assert await coord.valid_token() == live
        assert backend.calls == []

    async def test_sequential_refreshes_are_separate(self, coordinator, backend):
        backend.release.set()
        await coordinator.refresh()
        await coordinator.refresh()
        assert backend.calls == ["refresh-0", "refresh-1"]

    async def test_cancelled_waiter_does_not_cancel_refresh(self, coordinator, backend):
        first = asyncio.ensure_future(coordinator.refresh())
        second = asyncio.ensure_future(coordinator.refresh())
        await asyncio.sleep(0)
        first.cancel()
        backend.release.set()
        assert await second
        assert len(backend.calls) == 1


class TestFailure:
    async def test_every_waiter_sees_failure(self, backend):
        backend.fail = True
        logouts = []
        coord = RefreshCoordinator(backend, on_logout=lambda: logouts.append(True), clock=lambda: NOW)
        coord.set_tokens(token_expiring_at(NOW - 5), "refresh-0", schedule=False)
        waiters = [asyncio.ensure_future(coord.refresh()) for _ in range(4)]
        await asyncio.sleep(0)
        backend.release.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)
        assert all(isinstance(r, RefreshFailedError) for r in results)
        assert len(backend.calls) == 1
        assert logouts == [True]
        assert coord.access_token is None and not coord.is_authenticated
        assert not coord.is_refreshing

    async def test_no_refresh_token(self, backend):
        logouts = []
        coord = RefreshCoordinator(backend, on_logout=lambda: logouts.append(True))
        with pytest.raises(RefreshFailedError):
            await coord.refresh()
        assert backend.calls == []
        assert logouts == [True]


class TestProactiveRefresh:
    async def test_timer_fires_before_expiry(self, backend):
        backend.release.set()
        coord = RefreshCoordinator(backend, lead_time=60, clock=lambda: NOW)
        coord.set_tokens(token_expiring_at(NOW + 30), "refresh-0")
        for _ in range(20):
            await asyncio.sleep(0)
            if coord.refresh_count:
                break
        try:
            assert coord.refresh_count == 1
            assert coord.refresh_token == "refresh-1"
        finally:
            coord.clear()

    async def test_expires_in(self, backend):
        coord = RefreshCoordinator(backend, clock=lambda: NOW)
        assert coord.expires_in() is None
        coord.set_tokens(token_expiring_at(NOW + 120), "r", schedule=False)
        assert coord.expires_in() == 120
        coord.set_tokens("not-a-jwt", "r", schedule=False)
        assert coord.expires_in() is None


class TestProcessCoordinator:
    async def test_init_and_teardown(self, backend):
        coord = init_coordinator(backend)
        assert get_coordinator() is coord
        coord.set_tokens(token_expiring_at(NOW), "r", schedule=False)
        teardown_coordinator()
        assert get_coordinator() is None
        assert coord.refresh_token is None
