"""Single-flight access-token refresh.

Concurrent callers that need a fresh token share one in-flight refresh:
the first caller starts it, everyone else awaits the same task. A timer
refreshes proactively shortly before the access token expires.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from chatdesk.auth.tokens import seconds_until_expiry
from chatdesk.client.errors import ClientError, RefreshFailedError

logger = logging.getLogger(__name__)

REFRESH_LEAD_TIME = 60

RefreshFn = Callable[[str], Awaitable[tuple[str, str]]]


class RefreshCoordinator:
    def __init__(
        self,
        refresh_fn: RefreshFn,
        on_logout: Optional[Callable[[], None]] = None,
        lead_time: float = REFRESH_LEAD_TIME,
        clock: Callable[[], float] = time.time,
    ):
        self._refresh_fn = refresh_fn
        self._on_logout = on_logout
        self.lead_time = lead_time
        self._clock = clock
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self._pending: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None
        self.refresh_count = 0

    @property
    def is_refreshing(self) -> bool:
        return self._pending is not None

    @property
    def is_authenticated(self) -> bool:
        return self.refresh_token is not None

    def set_tokens(self, access_token: str, refresh_token: str, schedule: bool = True) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        if schedule:
            self._schedule()

    def expires_in(self) -> Optional[float]:
        if not self.access_token:
            return None
        return seconds_until_expiry(self.access_token, now=self._clock())

    def needs_refresh(self) -> bool:
        remaining = self.expires_in()
        return remaining is not None and remaining <= 0

    async def valid_token(self) -> Optional[str]:
        """Current access token, refreshed first if it has already expired."""
        if self.access_token and self.needs_refresh():
            return await self.refresh()
        return self.access_token

    async def refresh(self) -> str:
        """Refresh once no matter how many callers ask at the same time."""
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._do_refresh())
            self._pending.add_done_callback(self._settled)
        return await asyncio.shield(self._pending)

    def _settled(self, task: asyncio.Task) -> None:
        if self._pending is task:
            self._pending = None
        if not task.cancelled():
            # Mark retrieved so an unawaited failure is not reported at GC.
            task.exception()

    async def _do_refresh(self) -> str:
        if not self.refresh_token:
            self._fail()
            raise RefreshFailedError("No refresh token available")
        self.refresh_count += 1
        try:
            access, refresh = await self._refresh_fn(self.refresh_token)
        except ClientError as exc:
            logger.warning("Token refresh failed: %s", exc.code)
            self._fail()
            raise RefreshFailedError(body=exc.body) from exc
        self.set_tokens(access, refresh)
        logger.debug("Access token refreshed")
        return access

    def _fail(self) -> None:
        self.clear()
        if self._on_logout is not None:
            self._on_logout()

    def _schedule(self) -> None:
        self._cancel_timer()
        remaining = self.expires_in()
        if remaining is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        delay = max(0.0, remaining - self.lead_time)
        self._timer = loop.create_task(self._refresh_later(delay))

    async def _refresh_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timer = None
        try:
            await self.refresh()
        except RefreshFailedError:
            logger.info("Scheduled token refresh failed; session cleared")

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            if self._timer is not asyncio.current_task():
                self._timer.cancel()
        self._timer = None

    def clear(self) -> None:
        self._cancel_timer()
        self.access_token = None
        self.refresh_token = None


_coordinator: Optional[RefreshCoordinator] = None


def init_coordinator(refresh_fn: RefreshFn, **kwargs) -> RefreshCoordinator:
    """Create the process-wide coordinator for an authenticated session."""
    global _coordinator
    teardown_coordinator()
    _coordinator = RefreshCoordinator(refresh_fn, **kwargs)
    return _coordinator


def get_coordinator() -> Optional[RefreshCoordinator]:
    return _coordinator


def teardown_coordinator() -> None:
    global _coordinator
    if _coordinator is not None:
        _coordinator.clear()
    _coordinator = None
