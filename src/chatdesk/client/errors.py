"""Client-side error types and the error-code to UI-action table."""

from dataclasses import dataclass, field
from typing import Any, Optional


class ClientError(Exception):
    """Non-success response from the Chatdesk API."""

    def __init__(self, status_code: int, body: Optional[dict[str, Any]] = None):
        self.status_code = status_code
        self.body = body or {}
        self.code = self.body.get("code") or code_for_status(status_code)
        self.message = self.body.get("message") or self.body.get("error") or f"HTTP {status_code}"
        super().__init__(f"{self.code}: {self.message}")


class RefreshFailedError(ClientError):
    """The single-flight refresh failed; every waiter receives this."""

    def __init__(self, message: str = "Session expired; sign in again", body: Optional[dict] = None):
        super().__init__(401, {"code": "INVALID_REFRESH", "message": message, **(body or {})})


@dataclass(frozen=True)
class UIAction:
    action: str
    severity: str
    code: str
    message: str
    logout: bool = False
    retry_after: Optional[int] = None
    details: dict[str, Any] = field(default_factory=dict)


# code -> (action, severity, logout)
ACTIONS: dict[str, tuple[str, str, bool]] = {
    "TENANT_INACTIVE": ("MODAL_AND_LOGOUT", "critical", True),
    "TENANT_SUSPENDED": ("MODAL_AND_LOGOUT", "critical", True),
    "TENANT_DISABLED": ("MODAL_AND_LOGOUT", "critical", True),
    "SUBSCRIPTION_SUSPENDED": ("UPGRADE_CTA", "warning", False),
    "SUBSCRIPTION_EXPIRED": ("UPGRADE_CTA", "warning", False),
    "PLAN_LIMIT_REACHED": ("TOAST_AND_BLOCK", "warning", False),
    "MODULE_DISABLED": ("INFO_TOAST", "info", False),
    "PERMISSION_DENIED": ("TOAST", "error", False),
    "TOKEN_EXPIRED": ("AUTO_REFRESH", "info", False),
    "INVALID_TOKEN": ("REDIRECT_LOGIN", "error", True),
    "INVALID_REFRESH": ("REDIRECT_LOGIN", "error", True),
    "RATE_LIMIT_EXCEEDED": ("TOAST_WITH_RETRY", "warning", False),
    "PAYLOAD_TOO_LARGE": ("TOAST", "warning", False),
}

GENERIC = ("TOAST", "error", False)


def code_for_status(status_code: int) -> str:
    if status_code == 401:
        return "UNAUTHORIZED"
    if status_code == 403:
        return "PERMISSION_DENIED"
    if status_code == 429:
        return "RATE_LIMIT_EXCEEDED"
    if status_code >= 500:
        return "SERVER_ERROR"
    return "UNKNOWN_ERROR"


def map_error_to_action(status_code: int, body: Optional[dict[str, Any]] = None) -> UIAction:
    """Decide how the UI reacts to an error response.

    Unknown codes fall back to a generic recoverable toast.
    """
    body = body or {}
    code = body.get("code") or code_for_status(status_code)
    action, severity, logout = ACTIONS.get(code, GENERIC)
    message = body.get("message") or body.get("error") or "Something went wrong. Try again."

    details: dict[str, Any] = {}
    retry_after = None
    if code == "PLAN_LIMIT_REACHED":
        details = {k: body.get(k) for k in ("key", "limit", "current")}
    elif code == "MODULE_DISABLED":
        details = {"module": body.get("module")}
    elif code == "RATE_LIMIT_EXCEEDED":
        retry_after = int(body.get("retryAfter") or 60)
    return UIAction(
        action=action, severity=severity, code=code, message=message,
        logout=logout, retry_after=retry_after, details=details,
    )
