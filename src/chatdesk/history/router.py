"""Support history API: conversations, messages, transcripts."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from chatdesk.auth.context import RequestContext
from chatdesk.auth.roles import Role
from chatdesk.common.exceptions import NotFoundError, TenantUnidentifiedError
from chatdesk.common.models import utcnow
from chatdesk.common.responses import ok
from chatdesk.common.schemas import PaginatedResponse
from chatdesk.history.models import ConversationModel, MessageModel
from chatdesk.history.schemas import (
    ConversationCreate,
    ConversationResponse,
    ConversationUpdate,
    MessageCreate,
    MessageResponse,
)
from chatdesk.history.transcript import render_transcript, transcript_filename
from chatdesk.policy.gate import require
from chatdesk.scoping.scoped import scrub_query, store_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/history", tags=["history"])

LIST_FILTERS = {"status": "status", "agentId": "agent_id", "clientId": "client_id", "channel": "channel"}


def _get_db():
    from chatdesk.deps import get_db
    return get_db()


def _get_accountant():
    from chatdesk.deps import get_accountant
    return get_accountant()


def _own_only(ctx: RequestContext) -> dict:
    """Clients only ever see their own conversations."""
    if ctx.role == Role.client.value:
        return {"client_id": ctx.user_id}
    return {}


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


async def _conversation(store, ctx: RequestContext, conversation_id: str) -> ConversationModel:
    conversation = await store.find_one(
        ConversationModel, {"id": conversation_id, **_own_only(ctx)}
    )
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return conversation


@router.get("/conversations")
async def list_conversations(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    ctx: RequestContext = Depends(require(module="chat")),
):
    params = scrub_query(request.query_params)
    filter = {column: params[key] for key, column in LIST_FILTERS.items() if params.get(key)}
    filter.update(_own_only(ctx))

    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        total = await store.count(ConversationModel, filter)
        rows = await store.find(
            ConversationModel, filter,
            sort=[("created_at", -1)], limit=page_size, offset=(page - 1) * page_size,
        )
        items = [ConversationResponse.model_validate(r) for r in rows]
    return ok(PaginatedResponse(
        items=items, total=total, page=page, page_size=page_size,
        pages=(total + page_size - 1) // page_size,
    ))


@router.post("/conversations")
async def create_conversation(
    body: ConversationCreate,
    ctx: RequestContext = Depends(require(module="chat", quota=("maxConversations", 1))),
):
    from chatdesk.deps import get_gateway

    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        tenant_id = store.tenant_id
        if tenant_id is None:
            raise TenantUnidentifiedError()
        accountant = _get_accountant()
        await accountant.consume(session, tenant_id, "maxConversations", bypass=ctx.is_master)

        client_id = ctx.user_id if ctx.role == Role.client.value else body.client_id
        conversation = await store.insert(ConversationModel, {
            "subject": body.subject,
            "channel": body.channel,
            "client_id": client_id,
            "agent_id": body.agent_id,
            "tags": body.tags,
            "status": "open",
            "message_count": 0,
        })
        if body.first_message:
            await accountant.consume(session, tenant_id, "monthlyMessages", bypass=ctx.is_master)
            await store.insert(MessageModel, {
                "conversation_id": conversation.id,
                "sender_id": ctx.user_id,
                "sender_role": ctx.role,
                "body": body.first_message,
            })
            conversation.message_count = 1
            await session.flush()
        data = ConversationResponse.model_validate(conversation)

    await get_gateway().broadcast(
        tenant_id, "agents", "conversation-created", data.model_dump(by_alias=True, mode="json"),
    )
    logger.info("Conversation created", extra={**ctx.log_extra(), "conversation_id": data.id})
    return ok(data, status_code=201)


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    ctx: RequestContext = Depends(require(module="chat")),
):
    async with _get_db().get_session() as session:
        conversation = await _conversation(store_for(ctx, session), ctx, conversation_id)
        return ok(ConversationResponse.model_validate(conversation))


@router.patch("/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    body: ConversationUpdate,
    ctx: RequestContext = Depends(require(Role.agent.value, module="chat")),
):
    values = body.model_dump(exclude_unset=True)
    if values.get("status") == "closed":
        values["closed_at"] = utcnow()
    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        await _conversation(store, ctx, conversation_id)
        if values:
            await store.update(ConversationModel, {"id": conversation_id}, values)
        conversation = await store.get(ConversationModel, conversation_id)
        await session.refresh(conversation)
        return ok(ConversationResponse.model_validate(conversation))


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    limit: int = Query(100, ge=1, le=500),
    before: Optional[datetime] = None,
    ctx: RequestContext = Depends(require(module="chat")),
):
    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        await _conversation(store, ctx, conversation_id)
        filter: dict = {"conversation_id": conversation_id}
        if before:
            filter["created_at"] = {"$lt": before}
        rows = await store.find(MessageModel, filter, sort=[("created_at", 1)], limit=limit)
        return ok([MessageResponse.model_validate(r) for r in rows])


@router.post("/conversations/{conversation_id}/messages")
async def post_message(
    conversation_id: str,
    body: MessageCreate,
    ctx: RequestContext = Depends(require(module="chat", quota=("monthlyMessages", 1))),
):
    from chatdesk.deps import get_gateway

    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        tenant_id = store.tenant_id
        if tenant_id is None:
            raise TenantUnidentifiedError()
        await _get_accountant().consume(session, tenant_id, "monthlyMessages", bypass=ctx.is_master)
        conversation = await _conversation(store, ctx, conversation_id)
        if body.kind == "note" and ctx.role == Role.client.value:
            body.kind = "text"
        message = await store.insert(MessageModel, {
            "conversation_id": conversation.id,
            "sender_id": ctx.user_id,
            "sender_role": ctx.role,
            "body": body.body,
            "kind": body.kind,
        })
        await store.update(
            ConversationModel, {"id": conversation.id},
            {"$inc": {"message_count": 1}},
        )
        data = MessageResponse.model_validate(message)

    await get_gateway().broadcast(
        tenant_id, conversation_room(conversation_id), "new-message",
        data.model_dump(by_alias=True, mode="json"),
    )
    return ok(data, status_code=201)


@router.get("/conversations/{conversation_id}/transcript")
async def export_transcript(
    conversation_id: str,
    ctx: RequestContext = Depends(require(module="chat")),
):
    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        conversation = await _conversation(store, ctx, conversation_id)
        messages = await store.find(
            MessageModel, {"conversation_id": conversation_id}, sort=[("created_at", 1)]
        )
        if ctx.role == Role.client.value:
            messages = [m for m in messages if m.kind != "note"]
    logger.info("Transcript exported", extra={**ctx.log_extra(), "conversation_id": conversation_id})
    return StreamingResponse(
        render_transcript(conversation, messages),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{transcript_filename(conversation)}"'},
    )


@router.get("/stats")
async def conversation_stats(ctx: RequestContext = Depends(require(Role.agent.value, module="chat"))):
    async with _get_db().get_session() as session:
        store = store_for(ctx, session)
        rows = await store.aggregate(ConversationModel, [
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "messages": {"$sum": "$messageCount"}}},
            {"$sort": {"count": -1}},
        ])
    by_status = {row["_id"]: row["count"] for row in rows}
    return ok({
        "total": sum(by_status.values()),
        "byStatus": by_status,
        "messages": sum(int(row["messages"] or 0) for row in rows),
    })
