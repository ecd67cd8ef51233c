"""Fixed-window request rate limiting per client address."""

import math
import time
from typing import Callable, Iterable

from fastapi import Request

from chatdesk.common.config import get_settings
from chatdesk.common.exceptions import RateLimitError


class FixedWindowLimiter:
    """Counts hits per key inside consecutive windows of ``window`` seconds."""

    def __init__(
        self,
        max_hits: int,
        window: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_hits = max_hits
        self.window = window
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}

    def hit(self, key: str) -> None:
        """Record a hit; raise :class:`RateLimitError` when over the limit."""
        now = self._clock()
        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.window:
            started, count = now, 0
        count += 1
        self._windows[key] = (started, count)
        if count > self.max_hits:
            retry_after = max(1, math.ceil(started + self.window - now))
            raise RateLimitError(retry_after)
        if len(self._windows) > 10_000:
            self._prune(now)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)

    def _prune(self, now: float) -> None:
        stale = [k for k, (s, _) in self._windows.items() if now - s >= self.window]
        for key in stale:
            del self._windows[key]


def client_address(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """Peer address, or the nearest untrusted hop when the peer is a trusted proxy."""
    trusted = set(trusted_proxies)
    peer = request.client.host if request.client else "unknown"
    if peer not in trusted:
        return peer
    hops = [h.strip() for h in request.headers.get("x-forwarded-for", "").split(",") if h.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return peer


def rate_limited(limiter_factory: Callable[[], FixedWindowLimiter], scope: str):
    """Build a FastAPI dependency that charges one hit per request."""

    async def _dependency(request: Request) -> None:
        address = client_address(request, get_settings().trusted_proxies)
        limiter_factory().hit(f"{scope}:{address}")

    return _dependency
