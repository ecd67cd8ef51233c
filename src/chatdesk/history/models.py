"""SQLAlchemy models for support conversations."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chatdesk.common.models import Base, TenantScopedMixin, generate_uuid


class ConversationModel(Base, TenantScopedMixin):
    __tablename__ = "conversations"
    __table_args__ = (Index("ix_conversations_tenant_created", "tenant_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    subject: Mapped[str] = mapped_column(String(255), default="")
    status: Mapped[str] = mapped_column(String(20), default="open", index=True)
    channel: Mapped[str] = mapped_column(String(20), default="widget")
    client_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    agent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    tags: Mapped[list] = mapped_column(JSON, default=list)


class MessageModel(Base, TenantScopedMixin):
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_tenant_created", "tenant_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    conversation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    sender_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    sender_role: Mapped[str] = mapped_column(String(20), default="client")
    body: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(String(20), default="text")


class QueueEntryModel(Base, TenantScopedMixin):
    """A conversation waiting for an agent."""

    __tablename__ = "queue_entries"
    __table_args__ = (Index("ix_queue_entries_tenant_created", "tenant_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    conversation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
