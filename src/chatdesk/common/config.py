"""Chatdesk configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "secret_key": "insecure-dev-secret-change-me",
}


class ChatdeskSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHATDESK_", extra="ignore")

    environment: str = "development"
    secret_key: str = "insecure-dev-secret-change-me"
    jwt_algorithm: str = "HS256"

    # Tokens (seconds)
    access_token_ttl: int = 900
    refresh_token_ttl: int = 7 * 24 * 3600
    token_leeway: int = 30

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/chatdesk.db"

    # API
    api_title: str = "Chatdesk"
    api_version: str = "0.1.0"
    api_prefix: str = "/api"
    host: str = "0.0.0.0"
    port: int = 5000

    # Tenant resolution
    default_tenant_fallback: bool = False
    default_tenant_slug: str = "default"
    tenant_cache_ttl: int = 300
    tenant_cache_size: int = 1024

    # Rate limiting
    rate_limit_window: int = 900
    rate_limit_max: int = 1000
    auth_rate_limit_max: int = 20
    trusted_proxies: list[str] = []

    # CORS
    cors_max_age: int = 600
    cors_decision_ttl: int = 60
    cors_fallback_origins: list[str] = []
    cors_suggestion_threshold: int = 5

    # Realtime
    socket_ping_interval: int = 25

    # External collaborators
    stripe_webhook_secret: str = ""
    storage_base_url: str = "http://localhost:5000/storage"
    storage_url_ttl: int = 900
    mail_provider: str = ""
    mail_api_key: str = ""
    mail_from: str = "no-reply@chatdesk.local"

    @field_validator("token_leeway")
    @classmethod
    def _cap_leeway(cls, value: int) -> int:
        if value < 0 or value > 30:
            raise ValueError("token_leeway must be between 0 and 30 seconds")
        return value

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if not self.is_development and insecure_fields:
            env_vars = ", ".join(f"CHATDESK_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}. "
                "Generate secrets with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )

        if insecure_fields:
            warnings.warn(
                "Using the insecure default signing secret; set CHATDESK_SECRET_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> ChatdeskSettings:
    settings = ChatdeskSettings()
    settings.validate_for_production()
    return settings
