"""ASGI middleware applying the tenant CORS policy to every HTTP request."""

import logging
from typing import Optional
from urllib.parse import urlsplit

from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from chatdesk.auth.dependencies import bearer_token
from chatdesk.common.exceptions import ChatdeskError
from chatdesk.tenants.hosts import subdomain_of

logger = logging.getLogger(__name__)


class TenantCorsMiddleware:
    """Resolve the tenant without touching the user store, then apply its allow-list."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        origin = headers.get("origin")
        if not origin:
            await self.app(scope, receive, send)
            return

        from chatdesk.deps import get_cors_policy

        policy = get_cors_policy()
        request = Request(scope)
        tenant = await self._tenant_for(request, origin)
        preflight = request.method == "OPTIONS" and "access-control-request-method" in headers
        decision = policy.evaluate(origin, tenant)
        cors_headers = policy.response_headers(decision, preflight=preflight)

        if preflight:
            if decision.allowed:
                response: Response = Response(status_code=204, headers=cors_headers)
            else:
                response = JSONResponse(
                    {
                        "success": False,
                        "error": "Origin not allowed by CORS policy",
                        "code": "PERMISSION_DENIED",
                        "message": decision.reason,
                    },
                    status_code=403,
                    headers=cors_headers,
                )
            await response(scope, receive, send)
            return

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                for name, value in cors_headers.items():
                    if name == "Vary":
                        response_headers.add_vary_header(value)
                    else:
                        response_headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_cors)

    async def _tenant_for(self, request: Request, origin: str):
        from chatdesk.deps import get_registry, get_resolver, get_token_service

        registry = get_registry()
        try:
            token = bearer_token(request.headers.get("authorization"))
            if token:
                claims = get_token_service().verify(token)
                if claims.tenant_id:
                    return await registry.find_by_id(claims.tenant_id, include_inactive=True)
            resolution = await get_resolver().resolve(
                user=None,
                host=request.headers.get("host", ""),
                query=request.query_params,
                headers=request.headers,
                path=request.url.path,
                required=False,
            )
            if resolution.tenant is not None:
                return resolution.tenant
            return await self._tenant_from_origin(origin)
        except ChatdeskError as exc:
            logger.debug("CORS tenant lookup failed: %s", exc.code)
            return None

    async def _tenant_from_origin(self, origin: str):
        from chatdesk.deps import get_registry

        host = urlsplit(origin.strip().lower()).netloc
        label: Optional[str] = subdomain_of(host)
        if not label:
            return None
        return await get_registry().find_by_slug(label, include_inactive=True)
