"""SQLAlchemy model for uploaded file records."""

from typing import Optional

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from chatdesk.common.models import Base, TenantScopedMixin, generate_uuid


class FileModel(Base, TenantScopedMixin):
    __tablename__ = "files"
    __table_args__ = (Index("ix_files_tenant_created", "tenant_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    key: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(100), default="application/octet-stream")
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    conversation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    uploaded_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
