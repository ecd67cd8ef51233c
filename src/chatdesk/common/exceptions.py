"""Chatdesk exception hierarchy.

Every error carries a stable ``code`` and the HTTP status it maps to. The
policy components raise these; only the top-level adapter in
:mod:`chatdesk.common.responses` turns them into HTTP envelopes.
"""

from typing import Any, Optional


class ChatdeskError(Exception):
    """Base exception for all Chatdesk errors."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = "", code: str = "SERVER_ERROR"):
        self.message = message or self.default_message
        self.code = code
        super().__init__(self.message)

    def payload(self) -> dict[str, Any]:
        """Extra fields serialized next to ``code`` in the error envelope."""
        return {}


# ── Authentication ──

class AuthError(ChatdeskError):
    status_code = 401
    default_message = "Authentication required"

    def __init__(self, message: str = "", code: str = "UNAUTHORIZED"):
        super().__init__(message, code=code)


class UnauthorizedError(AuthError):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, code="UNAUTHORIZED")


class InvalidTokenError(AuthError):
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message, code="INVALID_TOKEN")


class TokenExpiredError(AuthError):
    def __init__(self, message: str = "Token expired"):
        super().__init__(message, code="TOKEN_EXPIRED")


class InvalidRefreshError(AuthError):
    def __init__(self, message: str = "Invalid refresh token"):
        super().__init__(message, code="INVALID_REFRESH")


# ── Authorization ──

class PermissionDeniedError(ChatdeskError):
    status_code = 403
    default_message = "You do not have permission to perform this action"

    def __init__(self, message: str = ""):
        super().__init__(message, code="PERMISSION_DENIED")


class CrossTenantWriteError(ChatdeskError):
    status_code = 403
    default_message = "Writes into another tenant are not allowed"

    def __init__(self, message: str = ""):
        super().__init__(message, code="CROSS_TENANT_WRITE_DENIED")


# ── Tenant state ──

class TenantNotFoundError(ChatdeskError):
    status_code = 404
    default_message = "Tenant not found"

    def __init__(self, message: str = ""):
        super().__init__(message, code="TENANT_NOT_FOUND")


class TenantUnidentifiedError(ChatdeskError):
    status_code = 400
    default_message = "Tenant could not be identified; send X-Tenant-Key, use the tenant subdomain or ?tenant="

    def __init__(self, message: str = ""):
        super().__init__(message, code="TENANT_UNIDENTIFIED")


class TenantStateError(ChatdeskError):
    """Tenant exists but cannot serve requests."""

    status_code = 403

    def __init__(self, message: str = "", code: str = "TENANT_INACTIVE"):
        super().__init__(message, code=code)


class TenantInactiveError(TenantStateError):
    default_message = "Your company account is inactive. Contact support."

    def __init__(self, message: str = ""):
        super().__init__(message, code="TENANT_INACTIVE")


class TenantSuspendedError(TenantStateError):
    default_message = "Your company account is suspended"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        self.reason = reason
        super().__init__(message, code="TENANT_SUSPENDED")

    def payload(self) -> dict[str, Any]:
        return {"reason": self.reason} if self.reason else {}


class TenantDisabledError(TenantStateError):
    default_message = "This tenant has been disabled"

    def __init__(self, message: str = ""):
        super().__init__(message, code="TENANT_DISABLED")


# ── Subscription ──

class SubscriptionError(ChatdeskError):
    status_code = 403

    def __init__(self, message: str = "", code: str = "SUBSCRIPTION_SUSPENDED"):
        super().__init__(message, code=code)


class SubscriptionSuspendedError(SubscriptionError):
    default_message = "Your subscription is suspended. Update your payment details."

    def __init__(self, message: str = ""):
        super().__init__(message, code="SUBSCRIPTION_SUSPENDED")


class SubscriptionExpiredError(SubscriptionError):
    default_message = "Your subscription has expired"

    def __init__(self, message: str = ""):
        super().__init__(message, code="SUBSCRIPTION_EXPIRED")


# ── Policy ──

class ModuleDisabledError(ChatdeskError):
    status_code = 403

    def __init__(self, module: str, message: str = ""):
        self.module = module
        super().__init__(
            message or f"Module '{module}' is not enabled for your plan",
            code="MODULE_DISABLED",
        )

    def payload(self) -> dict[str, Any]:
        return {"module": self.module, "upgrade": True}


class PlanLimitError(ChatdeskError):
    status_code = 429

    def __init__(self, key: str, limit: int, current: int, message: str = ""):
        self.key = key
        self.limit = limit
        self.current = current
        super().__init__(
            message or f"Plan limit reached for {key}; upgrade your plan to continue",
            code="PLAN_LIMIT_REACHED",
        )

    def payload(self) -> dict[str, Any]:
        return {"key": self.key, "limit": self.limit, "current": self.current, "upgrade": True}


# ── Transport ──

class RateLimitError(ChatdeskError):
    status_code = 429

    def __init__(self, retry_after: int, message: str = ""):
        self.retry_after = retry_after
        super().__init__(
            message or "Too many requests. Try again later.",
            code="RATE_LIMIT_EXCEEDED",
        )

    def payload(self) -> dict[str, Any]:
        return {"retryAfter": self.retry_after}


class ValidationError(ChatdeskError):
    status_code = 400
    default_message = "Invalid request"

    def __init__(self, message: str = "", details: Optional[list] = None):
        self.details = details
        super().__init__(message, code="VALIDATION_ERROR")

    def payload(self) -> dict[str, Any]:
        return {"details": self.details} if self.details else {}


class NotFoundError(ChatdeskError):
    status_code = 404
    default_message = "Resource not found"

    def __init__(self, message: str = ""):
        super().__init__(message, code="NOT_FOUND")


class ConflictError(ChatdeskError):
    status_code = 409
    default_message = "Resource already exists"

    def __init__(self, message: str = ""):
        super().__init__(message, code="CONFLICT")


class PayloadTooLargeError(ChatdeskError):
    status_code = 413

    def __init__(self, limit_mb: int, size_mb: float, message: str = ""):
        self.limit_mb = limit_mb
        self.size_mb = size_mb
        super().__init__(
            message or f"File exceeds the {limit_mb} MB limit",
            code="PAYLOAD_TOO_LARGE",
        )

    def payload(self) -> dict[str, Any]:
        return {"limit": self.limit_mb, "size": round(self.size_mb, 2)}
