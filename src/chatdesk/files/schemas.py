"""Pydantic schemas for file uploads."""

from datetime import datetime
from typing import Optional

from pydantic import Field

from chatdesk.common.schemas import CamelModel


class PresignRequest(CamelModel):
    filename: str = Field(..., min_length=1, max_length=255)
    size: int = Field(..., gt=0, description="Size in bytes")
    content_type: str = Field(default="application/octet-stream", max_length=100)
    conversation_id: Optional[str] = None


class FileResponse(CamelModel):
    id: str
    tenant_id: str
    key: str
    filename: str
    content_type: str
    size_bytes: int
    conversation_id: Optional[str] = None
    uploaded_by: Optional[str] = None
    created_at: datetime
