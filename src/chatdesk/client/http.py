"""Async HTTP client for the Chatdesk API."""

import logging
from typing import Any, Optional

import httpx

from chatdesk.client.errors import ClientError
from chatdesk.client.refresh import RefreshCoordinator

logger = logging.getLogger(__name__)


class ChatdeskClient:
    """Thin wrapper over :class:`httpx.AsyncClient`.

    Requests carry the coordinator's access token. A ``TOKEN_EXPIRED``
    response triggers one shared refresh and a single retry.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:5000",
        api_prefix: str = "/api",
        tenant: Optional[str] = None,
        coordinator: Optional[RefreshCoordinator] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_prefix = api_prefix.rstrip("/")
        self.tenant = tenant
        self.coordinator = coordinator or RefreshCoordinator(self._refresh_call)
        self._http = httpx.AsyncClient(base_url=self.base_url, transport=transport, timeout=timeout)

    async def __aenter__(self) -> "ChatdeskClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        self.coordinator.clear()
        await self._http.aclose()

    def _url(self, path: str) -> str:
        return f"{self.api_prefix}/{path.lstrip('/')}"

    def _headers(self, token: Optional[str]) -> dict[str, str]:
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self.tenant:
            headers["X-Tenant-Key"] = self.tenant
        return headers

    @staticmethod
    def _body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"data": body}

    async def _refresh_call(self, refresh_token: str) -> tuple[str, str]:
        response = await self._http.post(self._url("/auth/refresh"), json={"refreshToken": refresh_token})
        body = self._body(response)
        if response.status_code >= 400:
            raise ClientError(response.status_code, body)
        data = body.get("data") or {}
        return data["token"], data["refreshToken"]

    async def request(self, method: str, path: str, auth: bool = True, **kwargs: Any) -> Any:
        """Send a request and return the envelope's ``data``; raises :class:`ClientError`."""
        token = await self.coordinator.valid_token() if auth else None
        response = await self._http.request(method, self._url(path), headers=self._headers(token), **kwargs)
        body = self._body(response)

        if auth and response.status_code == 401 and body.get("code") == "TOKEN_EXPIRED":
            logger.debug("Access token expired server-side; refreshing")
            token = await self.coordinator.refresh()
            response = await self._http.request(method, self._url(path), headers=self._headers(token), **kwargs)
            body = self._body(response)

        if response.status_code >= 400:
            raise ClientError(response.status_code, body)
        return body.get("data")

    # ── Auth ──

    async def login(self, email: str, password: str) -> dict[str, Any]:
        data = await self.request("POST", "/auth/login", auth=False, json={"email": email, "password": password})
        self.coordinator.set_tokens(data["token"], data["refreshToken"])
        return data

    async def register(self, **payload: Any) -> dict[str, Any]:
        data = await self.request("POST", "/auth/register", auth=False, json=payload)
        self.coordinator.set_tokens(data["token"], data["refreshToken"])
        return data

    async def logout(self) -> None:
        try:
            await self.request("POST", "/auth/logout")
        finally:
            self.coordinator.clear()

    async def profile(self) -> dict[str, Any]:
        return await self.request("GET", "/auth/profile")

    # ── Tenant / history ──

    async def current_tenant(self) -> dict[str, Any]:
        return await self.request("GET", "/tenants/current")

    async def conversations(self, **filters: Any) -> dict[str, Any]:
        return await self.request("GET", "/history/conversations", params=filters)

    async def create_conversation(self, **payload: Any) -> dict[str, Any]:
        return await self.request("POST", "/history/conversations", json=payload)

    async def send_message(self, conversation_id: str, body: str) -> dict[str, Any]:
        return await self.request(
            "POST", f"/history/conversations/{conversation_id}/messages", json={"body": body},
        )
