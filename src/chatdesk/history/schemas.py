"""Pydantic schemas for conversations and messages."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import Field

from chatdesk.common.schemas import CamelModel

ConversationStatus = Literal["open", "pending", "closed"]


class ConversationCreate(CamelModel):
    subject: str = Field(default="", max_length=255)
    channel: str = Field(default="widget", max_length=20)
    client_id: Optional[str] = None
    agent_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    first_message: Optional[str] = Field(default=None, max_length=10_000)


class ConversationUpdate(CamelModel):
    status: Optional[ConversationStatus] = None
    agent_id: Optional[str] = None
    tags: Optional[list[str]] = None


class ConversationResponse(CamelModel):
    id: str
    tenant_id: str
    subject: str
    status: str
    channel: str
    client_id: Optional[str] = None
    agent_id: Optional[str] = None
    message_count: int = 0
    tags: list = Field(default_factory=list)
    closed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class MessageCreate(CamelModel):
    body: str = Field(..., min_length=1, max_length=10_000)
    kind: Literal["text", "note", "file"] = "text"


class MessageResponse(CamelModel):
    id: str
    tenant_id: str
    conversation_id: str
    sender_id: Optional[str] = None
    sender_role: str
    body: str
    kind: str
    created_at: datetime
