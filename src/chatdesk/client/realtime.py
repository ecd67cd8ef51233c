"""Realtime client: reconnecting socket with queued delivery.

States::

    new -> connecting -> connected
    connected -> reconnecting -> connected | failed
    connected | reconnecting -> closing -> closed   (auth-error, tenant-disabled, disconnect())

Events emitted while not connected are buffered FIFO (bounded, with a
staleness horizon) and flushed on the next successful connect. Rooms
joined before a disconnect are rejoined afterwards.
"""

import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import websockets

from chatdesk.client.errors import RefreshFailedError
from chatdesk.client.refresh import RefreshCoordinator

logger = logging.getLogger(__name__)

NEW = "new"
CONNECTING = "connecting"
CONNECTED = "connected"
RECONNECTING = "reconnecting"
FAILED = "failed"
CLOSING = "closing"
CLOSED = "closed"

TERMINAL_STATES = frozenset({FAILED, CLOSED})

Handler = Callable[[dict], Any]
Connector = Callable[[str], Awaitable[Any]]


class HandshakeRejected(Exception):
    def __init__(self, event: str, data: dict):
        self.event = event
        self.data = data or {}
        self.code = self.data.get("code")
        super().__init__(f"{event}: {self.code}")


async def websockets_connect(url: str):
    return await websockets.connect(url)


class RealtimeClient:
    def __init__(
        self,
        url: str,
        coordinator: RefreshCoordinator,
        connector: Connector = websockets_connect,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        max_attempts: int = 10,
        queue_size: int = 100,
        staleness: float = 60.0,
        ping_interval: float = 25.0,
        pong_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.coordinator = coordinator
        self._connector = connector
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_attempts = max_attempts
        self.staleness = staleness
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self._clock = clock
        self._sleep = sleep

        self.state = NEW
        self.socket_id: Optional[str] = None
        self.rooms: set[str] = set()
        self.queue: deque[tuple[float, str, dict]] = deque(maxlen=queue_size)
        self.attempts = 0
        self.last_pong = 0.0
        self._conn = None
        self._reader: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._reconnector: Optional[asyncio.Task] = None
        self._handlers: dict[str, list[Handler]] = {}
        self.transitions: list[str] = [NEW]

    # ── Public API ──

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    @property
    def connected(self) -> bool:
        return self.state == CONNECTED

    async def connect(self) -> bool:
        """Open the socket; on failure the reconnect policy takes over."""
        if self.state in TERMINAL_STATES:
            return False
        self._set_state(CONNECTING)
        try:
            await self._open()
        except HandshakeRejected as exc:
            await self._rejected(exc)
            return False
        except RefreshFailedError as exc:
            await self._terminate("auth-error", {"code": exc.code})
            return False
        except (OSError, websockets.WebSocketException) as exc:
            logger.info("Realtime connect failed: %s", exc)
            self._start_reconnect()
            return False
        return True

    async def emit(self, event: str, data: Optional[dict] = None) -> bool:
        """Send now if connected, otherwise queue. Returns True when sent."""
        if self.state == CONNECTED:
            try:
                await self._send(event, data or {})
                return True
            except websockets.ConnectionClosed:
                self._start_reconnect()
        if self.state in TERMINAL_STATES or self.state == CLOSING:
            return False
        self.queue.append((self._clock(), event, data or {}))
        return False

    async def join(self, room: str) -> None:
        self.rooms.add(room)
        if self.state == CONNECTED:
            await self._send("join-room", {"room": room})

    async def leave(self, room: str) -> None:
        self.rooms.discard(room)
        if self.state == CONNECTED:
            await self._send("leave-room", {"room": room})

    async def disconnect(self) -> None:
        """Terminal: drop the queue, stop timers, close the socket."""
        self._set_state(CLOSING)
        self.queue.clear()
        await self._teardown(cancel_reconnect=True)
        self._set_state(CLOSED)

    # ── Connection lifecycle ──

    def _set_state(self, state: str) -> None:
        if state != self.state:
            logger.debug("Realtime state %s -> %s", self.state, state)
            self.state = state
            self.transitions.append(state)

    def _socket_url(self, token: Optional[str]) -> str:
        sep = "&" if "?" in self.url else "?"
        return f"{self.url}{sep}{urlencode({'token': token or ''})}"

    async def _open(self) -> None:
        token = await self.coordinator.valid_token()
        conn = await self._connector(self._socket_url(token))
        first = self._decode(await conn.recv())
        event, data = first.get("event"), first.get("data") or {}
        if event != "socket:connected":
            await conn.close()
            raise HandshakeRejected(event or "unknown", data)

        self._conn = conn
        self.socket_id = data.get("socketId")
        self.attempts = 0
        self.last_pong = self._clock()
        self._set_state(CONNECTED)
        self._reader = asyncio.ensure_future(self._read_loop(conn))
        self._heartbeat = asyncio.ensure_future(self._heartbeat_loop(conn))

        for room in sorted(self.rooms):
            await self._send("join-room", {"room": room})
        await self._drain()
        self._dispatch("socket:connected", data)

    async def _rejected(self, exc: HandshakeRejected) -> None:
        if exc.event == "auth-error" and exc.code == "TOKEN_EXPIRED":
            try:
                await self.coordinator.refresh()
            except RefreshFailedError:
                await self._terminate("auth-error", exc.data)
                return
            self._start_reconnect()
            return
        await self._terminate(exc.event, exc.data)

    async def _drain(self) -> None:
        horizon = self._clock() - self.staleness
        while self.queue and self.state == CONNECTED:
            queued_at, event, data = self.queue.popleft()
            if queued_at < horizon:
                logger.debug("Dropped stale queued event %s", event)
                continue
            await self._send(event, data)

    async def _send(self, event: str, data: dict) -> None:
        await self._conn.send(json.dumps({"event": event, "data": data}))

    @staticmethod
    def _decode(raw) -> dict:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return {}
        return message if isinstance(message, dict) else {}

    async def _read_loop(self, conn) -> None:
        try:
            while True:
                message = self._decode(await conn.recv())
                await self._handle(message.get("event"), message.get("data") or {})
                if self.state != CONNECTED:
                    return
        except websockets.ConnectionClosed:
            if self.state == CONNECTED:
                self._dispatch("socket:disconnected", {"reason": "connection lost"})
                self._start_reconnect()

    async def _handle(self, event: Optional[str], data: dict) -> None:
        if event == "pong":
            self.last_pong = self._clock()
            return
        if event == "auth-error":
            if data.get("code") == "TOKEN_EXPIRED":
                try:
                    await self.coordinator.refresh()
                except RefreshFailedError:
                    await self._terminate("auth-error", data)
                    return
                self._start_reconnect()
                return
            await self._terminate("auth-error", data)
            return
        if event == "tenant-disabled":
            await self._terminate("tenant-disabled", data)
            return
        if event:
            self._dispatch(event, data)

    async def _heartbeat_loop(self, conn) -> None:
        while self.state == CONNECTED and conn is self._conn:
            await self._sleep(self.ping_interval)
            if self.state != CONNECTED or conn is not self._conn:
                return
            if self._clock() - self.last_pong > self.pong_timeout:
                logger.info("No pong within %ss; reconnecting", self.pong_timeout)
                self._start_reconnect()
                return
            try:
                await self._send("ping", {})
            except websockets.ConnectionClosed:
                self._start_reconnect()
                return

    def _start_reconnect(self) -> None:
        if self.state in TERMINAL_STATES or self.state == CLOSING:
            return
        if self._reconnector is not None and not self._reconnector.done():
            return
        self._set_state(RECONNECTING)
        self._reconnector = asyncio.ensure_future(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        await self._teardown(cancel_reconnect=False)
        while self.state == RECONNECTING:
            if self.attempts >= self.max_attempts:
                self._set_state(FAILED)
                self.queue.clear()
                self._dispatch("reconnect-failed", {"attempts": self.attempts})
                return
            delay = min(self.backoff_base * (2 ** self.attempts), self.backoff_max)
            self.attempts += 1
            await self._sleep(delay)
            if self.state != RECONNECTING:
                return
            try:
                await self._open()
                return
            except HandshakeRejected as exc:
                if exc.event == "auth-error" and exc.code == "TOKEN_EXPIRED":
                    try:
                        await self.coordinator.refresh()
                    except RefreshFailedError:
                        await self._terminate("auth-error", exc.data)
                        return
                    continue
                await self._terminate(exc.event, exc.data)
                return
            except RefreshFailedError as exc:
                await self._terminate("auth-error", {"code": exc.code})
                return
            except (OSError, websockets.WebSocketException) as exc:
                logger.debug("Reconnect attempt %d failed: %s", self.attempts, exc)

    async def _terminate(self, reason: str, data: dict) -> None:
        self._set_state(CLOSING)
        self.queue.clear()
        await self._teardown(cancel_reconnect=asyncio.current_task() is not self._reconnector)
        self._set_state(CLOSED)
        self._dispatch(reason, data)
        self._dispatch("socket:disconnected", {"reason": reason})

    async def _teardown(self, cancel_reconnect: bool) -> None:
        current = asyncio.current_task()
        tasks = [self._reader, self._heartbeat]
        if cancel_reconnect:
            tasks.append(self._reconnector)
        for task in tasks:
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reader = self._heartbeat = None
        if cancel_reconnect:
            self._reconnector = None
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                await conn.close()
            except websockets.WebSocketException as exc:
                logger.debug("Realtime close failed: %s", exc)

    def _dispatch(self, event: str, data: dict) -> None:
        for handler in self._handlers.get(event, ()):
            try:
                handler(data)
            except Exception:
                logger.exception("Realtime handler for %s failed", event)
