"""Dependency injection singletons for Chatdesk."""

from chatdesk.auth.service import AuthService
from chatdesk.auth.tokens import TokenService
from chatdesk.common.config import get_settings
from chatdesk.common.database import DatabaseManager
from chatdesk.common.ratelimit import FixedWindowLimiter
from chatdesk.cors.policy import CorsPolicy
from chatdesk.files.storage import PresignedStorage
from chatdesk.notifications.mailer import Mailer
from chatdesk.policy.gate import AuthorizationGate
from chatdesk.realtime.gateway import RealtimeGateway
from chatdesk.tenants.registry import TenantRegistry
from chatdesk.tenants.resolver import TenantResolver
from chatdesk.tenants.service import TenantService
from chatdesk.usage.accountant import QuotaAccountant

_db: DatabaseManager | None = None
_tokens: TokenService | None = None
_registry: TenantRegistry | None = None
_resolver: TenantResolver | None = None
_accountant: QuotaAccountant | None = None
_gate: AuthorizationGate | None = None
_tenants: TenantService | None = None
_auth: AuthService | None = None
_cors: CorsPolicy | None = None
_mailer: Mailer | None = None
_auth_limiter: FixedWindowLimiter | None = None
_general_limiter: FixedWindowLimiter | None = None
_gateway: RealtimeGateway | None = None
_storage: PresignedStorage | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_token_service() -> TokenService:
    global _tokens
    if _tokens is None:
        _tokens = TokenService(get_settings())
    return _tokens


def get_registry() -> TenantRegistry:
    global _registry
    if _registry is None:
        settings = get_settings()
        _registry = TenantRegistry(
            get_db(), ttl=settings.tenant_cache_ttl, maxsize=settings.tenant_cache_size,
        )
    return _registry


def get_resolver() -> TenantResolver:
    global _resolver
    if _resolver is None:
        settings = get_settings()
        _resolver = TenantResolver(
            get_registry(),
            fallback_enabled=settings.default_tenant_fallback,
            default_slug=settings.default_tenant_slug,
        )
    return _resolver


def get_accountant() -> QuotaAccountant:
    global _accountant
    if _accountant is None:
        _accountant = QuotaAccountant()
    return _accountant


def get_gate() -> AuthorizationGate:
    global _gate
    if _gate is None:
        _gate = AuthorizationGate(get_db(), get_accountant())
    return _gate


def get_tenant_service() -> TenantService:
    global _tenants
    if _tenants is None:
        _tenants = TenantService(
            get_registry(), get_accountant(),
            on_disabled=get_gateway().disable_tenant,
        )
    return _tenants


def get_auth_service() -> AuthService:
    global _auth
    if _auth is None:
        _auth = AuthService(
            get_token_service(), get_tenant_service(), get_registry(), get_accountant(),
        )
    return _auth


def get_cors_policy() -> CorsPolicy:
    global _cors
    if _cors is None:
        settings = get_settings()
        _cors = CorsPolicy(
            max_age=settings.cors_max_age,
            decision_ttl=settings.cors_decision_ttl,
            fallback_origins=settings.cors_fallback_origins,
            suggestion_threshold=settings.cors_suggestion_threshold,
            development=settings.is_development,
        )
        get_registry().on_invalidate(_cors.invalidate)
    return _cors


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        settings = get_settings()
        _mailer = Mailer(
            provider=settings.mail_provider,
            api_key=settings.mail_api_key,
            from_email=settings.mail_from,
        )
    return _mailer


def get_auth_limiter() -> FixedWindowLimiter:
    global _auth_limiter
    if _auth_limiter is None:
        settings = get_settings()
        _auth_limiter = FixedWindowLimiter(settings.auth_rate_limit_max, settings.rate_limit_window)
    return _auth_limiter


def get_general_limiter() -> FixedWindowLimiter:
    global _general_limiter
    if _general_limiter is None:
        settings = get_settings()
        _general_limiter = FixedWindowLimiter(settings.rate_limit_max, settings.rate_limit_window)
    return _general_limiter


async def _load_socket_tenant(tenant_id: str):
    return await get_registry().find_by_id(tenant_id, include_inactive=True)


def get_gateway() -> RealtimeGateway:
    global _gateway
    if _gateway is None:
        from chatdesk.auth.dependencies import load_user

        _gateway = RealtimeGateway(
            authenticate=load_user,
            load_tenant=_load_socket_tenant,
            ping_interval=get_settings().socket_ping_interval,
        )
    return _gateway


def get_storage() -> PresignedStorage:
    global _storage
    if _storage is None:
        settings = get_settings()
        _storage = PresignedStorage(
            settings.secret_key, settings.storage_base_url, ttl=settings.storage_url_ttl,
        )
    return _storage


def reset_singletons() -> None:
    """Forget every singleton; the next getter call rebuilds from settings."""
    global _db, _tokens, _registry, _resolver, _accountant, _gate, _tenants, _auth
    global _cors, _mailer, _auth_limiter, _general_limiter, _gateway, _storage
    _db = _tokens = _registry = _resolver = _accountant = _gate = _tenants = _auth = None
    _cors = _mailer = _auth_limiter = _general_limiter = _gateway = _storage = None
