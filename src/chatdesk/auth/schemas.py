"""Pydantic schemas for auth endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import Field

from chatdesk.common.schemas import CamelModel
from chatdesk.tenants.schemas import SLUG_PATTERN, TenantSummary

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RegisterRequest(CamelModel):
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field(..., min_length=1, max_length=255)
    company_name: Optional[str] = Field(None, max_length=255)
    # Join an existing tenant instead of provisioning a new one.
    tenant_slug: Optional[str] = Field(None, pattern=SLUG_PATTERN)


class LoginRequest(CamelModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1)


class RefreshRequest(CamelModel):
    refresh_token: str


class ProfileUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)


class ChangePasswordRequest(CamelModel):
    current_password: str
    new_password: str = Field(..., min_length=8, max_length=128)


class UserResponse(CamelModel):
    id: str
    email: str
    name: str
    role: str
    tenant_id: Optional[str] = None
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AuthResponse(CamelModel):
    token: str
    refresh_token: str
    expires_in: int
    user: UserResponse
    tenant: Optional[TenantSummary] = None


class TokenResponse(CamelModel):
    token: str
    refresh_token: str
    expires_in: int
