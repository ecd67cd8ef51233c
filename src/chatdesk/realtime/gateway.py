"""Realtime gateway: authenticated sockets partitioned into tenant rooms.

Every inbound event is decorated with ``tenantId``, ``userId``, ``socketId``
and ``ts`` taken from the authenticated session; a client-supplied
``tenantId`` is discarded. Room names are always ``{tenantId}:{room}``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from chatdesk.auth.roles import is_master
from chatdesk.common.exceptions import (
    AuthError,
    ChatdeskError,
    TenantUnidentifiedError,
    ValidationError,
)
from chatdesk.common.models import generate_uuid
from chatdesk.policy.gate import check_tenant_state
from chatdesk.realtime.rooms import room_name

logger = logging.getLogger(__name__)

AUTH_ERROR_CLOSE = 4401
TENANT_DISABLED_CLOSE = 4403
IDLE_CLOSE = 4408


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass(eq=False)
class SocketSession:
    socket_id: str
    connection: Connection
    user_id: str
    role: str
    tenant_id: Optional[str]
    token_exp: float
    rooms: set[str] = field(default_factory=set)
    state: str = "connected"
    connected_at: float = 0.0
    last_seen: float = 0.0

    @property
    def is_master(self) -> bool:
        return is_master(self.role)


Authenticator = Callable[[str], Awaitable[tuple[Any, Any]]]
TenantLoader = Callable[[str], Awaitable[Any]]


class RealtimeGateway:
    def __init__(
        self,
        authenticate: Authenticator,
        load_tenant: TenantLoader,
        ping_interval: float = 25,
        pong_timeout: float = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._authenticate = authenticate
        self._load_tenant = load_tenant
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self._clock = clock
        self.sessions: dict[str, SocketSession] = {}
        self.rooms: dict[str, set[str]] = {}
        self._handlers = {
            "join-room": self._on_join,
            "leave-room": self._on_leave,
            "ping": self._on_ping,
            "authenticate": self._on_authenticate,
            "send-message": self._on_send_message,
            "typing-start": self._on_typing_start,
            "typing-stop": self._on_typing_stop,
        }
        self._app_handlers: dict[str, Callable[[SocketSession, dict], Awaitable[None]]] = {}

    # ── Lifecycle ──

    async def connect(self, connection: Connection, token: Optional[str]) -> Optional[SocketSession]:
        """Handshake: a valid access token and an available tenant, or the socket is closed."""
        try:
            if not token:
                raise AuthError("Authentication token required")
            user, claims = await self._authenticate(token)
            if not is_master(user.role):
                if not user.tenant_id:
                    raise TenantUnidentifiedError()
                tenant = await self._load_tenant(user.tenant_id)
                check_tenant_state(tenant)
        except AuthError as exc:
            await self._send(connection, "auth-error", {"code": exc.code, "message": exc.message})
            await connection.close(code=AUTH_ERROR_CLOSE)
            return None
        except ChatdeskError as exc:
            await self._send(connection, "tenant-disabled", {"code": exc.code, "message": exc.message})
            await connection.close(code=TENANT_DISABLED_CLOSE)
            return None

        now = self._clock()
        session = SocketSession(
            socket_id=generate_uuid(),
            connection=connection,
            user_id=user.id,
            role=user.role,
            tenant_id=user.tenant_id,
            token_exp=float(claims.exp),
            connected_at=now,
            last_seen=now,
        )
        self.sessions[session.socket_id] = session
        logger.info(
            "Socket connected",
            extra={"tenant_id": session.tenant_id, "user_id": session.user_id, "socket_id": session.socket_id},
        )
        await self._emit(session, "socket:connected", {
            "socketId": session.socket_id,
            "tenantId": session.tenant_id,
            "userId": session.user_id,
            "pingInterval": self.ping_interval,
        })
        return session

    async def disconnect(self, session: SocketSession, reason: str = "client disconnect") -> None:
        if session.socket_id not in self.sessions:
            return
        for full in list(session.rooms):
            self._leave_room(session, full)
        del self.sessions[session.socket_id]
        session.state = "closed"
        logger.info(
            "Socket disconnected",
            extra={"tenant_id": session.tenant_id, "socket_id": session.socket_id, "reason": reason},
        )

    async def _close(self, session: SocketSession, event: str, payload: dict, code: int) -> None:
        session.state = "closing"
        await self._emit(session, event, payload)
        await self._emit(session, "socket:disconnected", {"reason": event})
        await self.disconnect(session, reason=event)
        try:
            await session.connection.close(code=code)
        except RuntimeError:
            logger.debug("Socket %s already closed by peer", session.socket_id)

    # ── Inbound ──

    def on(self, event: str, handler: Callable[[SocketSession, dict], Awaitable[None]]) -> None:
        """Register an application event handler."""
        self._app_handlers[event] = handler

    def decorate(self, session: SocketSession, data: Optional[dict]) -> dict:
        payload = {k: v for k, v in (data or {}).items() if k not in ("tenantId", "userId", "socketId", "ts")}
        payload.update({
            "tenantId": session.tenant_id,
            "userId": session.user_id,
            "socketId": session.socket_id,
            "ts": self._clock(),
        })
        return payload

    async def handle(self, session: SocketSession, message: dict) -> None:
        """Dispatch one inbound ``{"event": ..., "data": ...}`` frame."""
        if session.state != "connected":
            return
        session.last_seen = self._clock()
        event = message.get("event") if isinstance(message, dict) else None
        raw = message.get("data") if isinstance(message, dict) else None
        if event != "authenticate" and self._clock() >= session.token_exp:
            await self._close(
                session, "auth-error",
                {"code": "TOKEN_EXPIRED", "message": "Token expired"}, AUTH_ERROR_CLOSE,
            )
            return

        handler = self._handlers.get(event) or self._app_handlers.get(event)
        if handler is None:
            await self._emit(session, "error", {"code": "VALIDATION_ERROR", "message": f"Unknown event '{event}'"})
            return
        if event == "authenticate":
            data = dict(raw or {})
        else:
            data = self.decorate(session, raw if isinstance(raw, dict) else {})
            if session.is_master and isinstance(raw, dict) and raw.get("tenantId"):
                data["scopeTenantId"] = raw["tenantId"]
        try:
            await handler(session, data)
        except ValidationError as exc:
            await self._emit(session, "error", {"code": exc.code, "message": exc.message})

    def _tenant_for(self, session: SocketSession, data: dict) -> str:
        tenant_id = session.tenant_id or data.get("scopeTenantId")
        if not tenant_id:
            raise ValidationError("Master sockets must name a tenantId")
        return tenant_id

    async def _on_join(self, session: SocketSession, data: dict) -> None:
        full = room_name(self._tenant_for(session, data), data.get("room", ""))
        session.rooms.add(full)
        self.rooms.setdefault(full, set()).add(session.socket_id)
        await self._emit(session, "joined-room", {"room": data.get("room"), "fullRoom": full})

    async def _on_leave(self, session: SocketSession, data: dict) -> None:
        full = room_name(self._tenant_for(session, data), data.get("room", ""))
        self._leave_room(session, full)
        await self._emit(session, "left-room", {"room": data.get("room"), "fullRoom": full})

    def _leave_room(self, session: SocketSession, full: str) -> None:
        session.rooms.discard(full)
        members = self.rooms.get(full)
        if members is not None:
            members.discard(session.socket_id)
            if not members:
                del self.rooms[full]

    async def _on_ping(self, session: SocketSession, data: dict) -> None:
        if session.tenant_id:
            try:
                check_tenant_state(await self._load_tenant(session.tenant_id))
            except ChatdeskError as exc:
                await self._close(
                    session, "tenant-disabled",
                    {"code": exc.code, "message": exc.message}, TENANT_DISABLED_CLOSE,
                )
                return
        await self._emit(session, "pong", {"ts": self._clock()})

    async def _on_authenticate(self, session: SocketSession, data: dict) -> None:
        """Swap in a refreshed access token for the live session."""
        try:
            user, claims = await self._authenticate(data.get("token") or "")
        except AuthError as exc:
            await self._close(
                session, "auth-error", {"code": exc.code, "message": exc.message}, AUTH_ERROR_CLOSE,
            )
            return
        if user.id != session.user_id or user.tenant_id != session.tenant_id:
            await self._close(
                session, "auth-error",
                {"code": "INVALID_TOKEN", "message": "Token belongs to another account"},
                AUTH_ERROR_CLOSE,
            )
            return
        session.token_exp = float(claims.exp)
        await self._emit(session, "token-refreshed", {"expiresAt": session.token_exp})

    async def _on_send_message(self, session: SocketSession, data: dict) -> None:
        full = room_name(self._tenant_for(session, data), data.get("room", ""))
        if full not in session.rooms:
            raise ValidationError("Join the room before sending to it")
        await self._broadcast_full(full, "new-message", data)

    async def _on_typing_start(self, session: SocketSession, data: dict) -> None:
        await self._typing(session, data, True)

    async def _on_typing_stop(self, session: SocketSession, data: dict) -> None:
        await self._typing(session, data, False)

    async def _typing(self, session: SocketSession, data: dict, typing: bool) -> None:
        full = room_name(self._tenant_for(session, data), data.get("room", ""))
        if full not in session.rooms:
            return
        data["isTyping"] = typing
        await self._broadcast_full(full, "typing", data, exclude=session.socket_id)

    # ── Outbound ──

    async def _send(self, connection: Connection, event: str, data: dict) -> bool:
        try:
            await connection.send_json({"event": event, "data": data})
        except (RuntimeError, ConnectionError, OSError):
            return False
        return True

    async def _emit(self, session: SocketSession, event: str, data: dict) -> bool:
        return await self._send(session.connection, event, data)

    async def _broadcast_full(
        self, full: str, event: str, data: dict, exclude: Optional[str] = None
    ) -> int:
        tenant_id = full.split(":", 1)[0]
        delivered = 0
        dead = []
        for socket_id in list(self.rooms.get(full, ())):
            session = self.sessions.get(socket_id)
            if session is None or socket_id == exclude:
                continue
            if session.tenant_id != tenant_id and not session.is_master:
                continue
            if await self._emit(session, event, data):
                delivered += 1
            else:
                dead.append(session)
        for session in dead:
            await self.disconnect(session, reason="send failed")
        return delivered

    async def broadcast(
        self, tenant_id: str, room: str, event: str, data: dict, exclude: Optional[str] = None
    ) -> int:
        """Send ``event`` to everyone in ``{tenant_id}:{room}``."""
        payload = {**data, "tenantId": tenant_id, "ts": self._clock()}
        return await self._broadcast_full(room_name(tenant_id, room), event, payload, exclude=exclude)

    async def disable_tenant(self, tenant_id: str, reason: str = "") -> int:
        """Push ``tenant-disabled`` to every socket of the tenant and close them."""
        doomed = [s for s in self.sessions.values() if s.tenant_id == tenant_id]
        for session in doomed:
            await self._close(
                session, "tenant-disabled",
                {"code": "TENANT_SUSPENDED", "message": reason or "Tenant disabled"},
                TENANT_DISABLED_CLOSE,
            )
        if doomed:
            logger.warning("Closed sockets of disabled tenant", extra={"tenant_id": tenant_id, "count": len(doomed)})
        return len(doomed)

    # ── Heartbeat ──

    async def sweep(self) -> int:
        """Close sockets silent for longer than the pong timeout or holding expired tokens."""
        now = self._clock()
        closed = 0
        for session in list(self.sessions.values()):
            if now >= session.token_exp:
                await self._close(
                    session, "auth-error",
                    {"code": "TOKEN_EXPIRED", "message": "Token expired"}, AUTH_ERROR_CLOSE,
                )
                closed += 1
            elif now - session.last_seen > self.pong_timeout:
                await self._close(session, "socket:timeout", {"idleFor": now - session.last_seen}, IDLE_CLOSE)
                closed += 1
        return closed

    async def run_heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Heartbeat sweep failed")

    def stats(self) -> dict:
        by_tenant: dict[str, int] = {}
        for session in self.sessions.values():
            key = session.tenant_id or "master"
            by_tenant[key] = by_tenant.get(key, 0) + 1
        return {"sockets": len(self.sessions), "rooms": len(self.rooms), "byTenant": by_tenant}
