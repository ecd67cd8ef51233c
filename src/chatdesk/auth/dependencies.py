"""Request authentication and tenant resolution dependencies."""

import logging
from typing import Optional

from fastapi import Header, Request

from chatdesk.auth.context import RequestContext
from chatdesk.auth.models import UserModel
from chatdesk.common.exceptions import InvalidTokenError, UnauthorizedError

logger = logging.getLogger(__name__)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def load_user(token: str) -> tuple[UserModel, object]:
    """Verify ``token`` and re-read the user it names."""
    from chatdesk.deps import get_db, get_token_service

    claims = get_token_service().verify(token)
    async with get_db().get_session() as session:
        user = await session.get(UserModel, claims.sub)
    if user is None or not user.is_active:
        raise UnauthorizedError("User not found or inactive")
    if (claims.tenant_id or None) != (user.tenant_id or None) or claims.role != user.role:
        logger.warning(
            "Token claims disagree with user record",
            extra={"user_id": user.id, "tenant_id": user.tenant_id},
        )
        raise InvalidTokenError("Token does not match the current account")
    return user, claims


async def current_context(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> RequestContext:
    """Authenticate (optionally) and resolve the tenant for this request."""
    cached = getattr(request.state, "chatdesk_ctx", None)
    if cached is not None:
        return cached

    from chatdesk.deps import get_resolver

    user, claims = None, None
    token = bearer_token(authorization)
    if token:
        user, claims = await load_user(token)

    resolution = await get_resolver().resolve(
        user=user,
        host=request.headers.get("host", ""),
        query=request.query_params,
        headers=request.headers,
        path=request.url.path,
        required=False,
    )
    ctx = RequestContext(
        user=user,
        claims=claims,
        tenant=resolution.tenant,
        is_master=resolution.is_master,
        resolved_by=resolution.strategy,
        master_scope=resolution.master_scope,
    )
    request.state.chatdesk_ctx = ctx
    return ctx
