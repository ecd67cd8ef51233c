"""Per-tenant CORS allow-lists.

Patterns:

* ``https://app.example.com``  exact origin
* ``*``                        any origin (only when configured explicitly)
* ``*.example.com``            any origin whose host ends in ``.example.com``
                               with at least one label in front
* ``http://localhost:*``       any port on that scheme and host

Decisions are cached per (tenant, origin) and dropped whenever the tenant's
allow-list changes. The concrete origin is always echoed back; ``*`` is never
sent together with credentials.
"""

import logging
import re
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional
from urllib.parse import urlsplit

from chatdesk.common.cache import TTLCache
from chatdesk.tenants.hosts import is_ip

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")
ALLOWED_HEADERS = (
    "Content-Type",
    "Authorization",
    "X-Requested-With",
    "X-Tenant-Id",
    "X-Tenant-Key",
    "X-Request-Id",
)
EXPOSED_HEADERS = ("X-Total-Count", "X-Page-Count", "Retry-After")

DEVELOPMENT_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:3001",
    "http://localhost:5173",
    "http://localhost:5174",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
)

_LABEL = r"(?!-)[a-z0-9-]{1,63}(?<!-)"
_HOST = rf"(?:{_LABEL}\.)*{_LABEL}"
_EXACT = re.compile(rf"^https?://{_HOST}(?::\d{{1,5}})?$")
_PORT_WILDCARD = re.compile(rf"^https?://{_HOST}:\*$")
_SUFFIX = re.compile(rf"^\*\.{_HOST}$")

NO_TENANT = "-"


def normalize_origin(origin: str) -> str:
    return origin.strip().rstrip("/").lower()


def is_valid_pattern(pattern: str) -> bool:
    pattern = normalize_origin(pattern)
    return (
        pattern == "*"
        or bool(_EXACT.match(pattern))
        or bool(_PORT_WILDCARD.match(pattern))
        or bool(_SUFFIX.match(pattern))
    )


def origin_matches(origin: str, pattern: str) -> bool:
    origin = normalize_origin(origin)
    pattern = normalize_origin(pattern)
    if not origin:
        return False
    if pattern == "*":
        return True
    if origin == pattern:
        return True

    parts = urlsplit(origin)
    host = parts.hostname or ""
    if pattern.startswith("*."):
        domain = pattern[2:]
        return host.endswith("." + domain) and len(host) > len(domain) + 1
    if pattern.endswith(":*"):
        base = urlsplit(pattern[:-2])
        return parts.scheme == base.scheme and host == base.hostname and parts.port is not None
    return False


def suggest_pattern(origin: str) -> str:
    """Allow-list entry that would admit ``origin`` and its siblings."""
    parts = urlsplit(normalize_origin(origin))
    host = parts.hostname or ""
    if host == "localhost":
        return f"{parts.scheme}://localhost:*"
    labels = host.split(".")
    if len(labels) > 2 and not is_ip(host):
        return "*." + ".".join(labels[-2:])
    return normalize_origin(origin)


@dataclass(frozen=True)
class CorsDecision:
    allowed: bool
    origin: str
    tenant_id: Optional[str]
    reason: str
    matched: Optional[str] = None


@dataclass
class _OriginStats:
    allowed: int = 0
    blocked: int = 0
    last_seen: float = 0.0


@dataclass
class _TenantStats:
    requests: int = 0
    origins: dict[str, _OriginStats] = field(default_factory=lambda: defaultdict(_OriginStats))


class CorsPolicy:
    def __init__(
        self,
        max_age: int = 600,
        decision_ttl: float = 60,
        fallback_origins: Iterable[str] = (),
        suggestion_threshold: int = 5,
        development: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_age = max_age
        self.fallback_origins = [normalize_origin(o) for o in fallback_origins]
        self.suggestion_threshold = suggestion_threshold
        self.development = development
        self._clock = clock
        self._decisions: TTLCache[CorsDecision] = TTLCache(maxsize=4096, ttl=decision_ttl, clock=clock)
        self._stats: dict[str, _TenantStats] = defaultdict(_TenantStats)
        self._recent_blocked: deque[tuple[str, str]] = deque(maxlen=50)

    # ── Decisions ──

    def allow_list(self, tenant) -> list[str]:
        origins = list(tenant.allowed_origins or []) if tenant is not None else list(self.fallback_origins)
        if self.development:
            origins.extend(DEVELOPMENT_ORIGINS)
        return origins

    def evaluate(self, origin: str, tenant) -> CorsDecision:
        """Decide for ``origin`` against ``tenant`` (or the fallback list) and record stats."""
        origin = normalize_origin(origin)
        tenant_id = tenant.id if tenant is not None else None
        key = (tenant_id or NO_TENANT, origin)
        decision = self._decisions.get(key)
        if decision is None:
            decision = self._decide(origin, tenant)
            self._decisions.set(key, decision)
        self._record(decision)
        return decision

    def _decide(self, origin: str, tenant) -> CorsDecision:
        tenant_id = tenant.id if tenant is not None else None
        for pattern in self.allow_list(tenant):
            if origin_matches(origin, pattern):
                return CorsDecision(True, origin, tenant_id, "Origin allowed", matched=pattern)
        reason = "Origin not in allow-list" if tenant is not None else "No tenant resolved and origin not in fallback list"
        return CorsDecision(False, origin, tenant_id, reason)

    def invalidate(self, tenant_id: str) -> None:
        if tenant_id == "*":
            self._decisions.clear()
            return
        dropped = self._decisions.discard_where(lambda key, _: key[0] == tenant_id)
        if dropped:
            logger.debug("CORS decisions invalidated", extra={"tenant_id": tenant_id, "dropped": dropped})

    def clear_cache(self) -> None:
        self._decisions.clear()

    # ── Response headers ──

    def response_headers(self, decision: CorsDecision, preflight: bool = False) -> dict[str, str]:
        if not decision.allowed:
            return {"Vary": "Origin"}
        headers = {
            "Access-Control-Allow-Origin": decision.origin,
            "Access-Control-Allow-Credentials": "true",
            "Vary": "Origin",
        }
        if preflight:
            headers["Access-Control-Allow-Methods"] = ", ".join(ALLOWED_METHODS)
            headers["Access-Control-Allow-Headers"] = ", ".join(ALLOWED_HEADERS)
            headers["Access-Control-Max-Age"] = str(self.max_age)
        else:
            headers["Access-Control-Expose-Headers"] = ", ".join(EXPOSED_HEADERS)
        return headers

    # ── Observability ──

    def _record(self, decision: CorsDecision) -> None:
        bucket = self._stats[decision.tenant_id or NO_TENANT]
        bucket.requests += 1
        entry = bucket.origins[decision.origin]
        entry.last_seen = self._clock()
        if decision.allowed:
            entry.allowed += 1
        else:
            entry.blocked += 1
            self._recent_blocked.append((decision.tenant_id or NO_TENANT, decision.origin))
            logger.info(
                "CORS origin blocked",
                extra={"tenant_id": decision.tenant_id, "origin": decision.origin},
            )

    def stats(self, tenant_id: Optional[str] = None) -> dict:
        if tenant_id is not None:
            bucket = self._stats.get(tenant_id, _TenantStats())
            return {
                "tenantId": tenant_id,
                "totalRequests": bucket.requests,
                "allowed": _ranked(bucket, "allowed"),
                "blocked": _ranked(bucket, "blocked"),
            }
        rows = [
            {"tenantId": tid, "origin": origin, "allowed": s.allowed, "blocked": s.blocked}
            for tid, bucket in self._stats.items()
            for origin, s in bucket.origins.items()
        ]
        return {
            "totalAllowed": sum(r["allowed"] for r in rows),
            "totalBlocked": sum(r["blocked"] for r in rows),
            "topAllowed": sorted((r for r in rows if r["allowed"]), key=lambda r: -r["allowed"])[:10],
            "topBlocked": sorted((r for r in rows if r["blocked"]), key=lambda r: -r["blocked"])[:10],
            "recentBlocked": [
                {"tenantId": tid, "origin": origin} for tid, origin in reversed(self._recent_blocked)
            ],
        }

    def blocked_count(self, tenant_id: Optional[str], origin: str) -> int:
        bucket = self._stats.get(tenant_id or NO_TENANT)
        if bucket is None or normalize_origin(origin) not in bucket.origins:
            return 0
        return bucket.origins[normalize_origin(origin)].blocked

    def clear_stats(self, tenant_id: Optional[str] = None) -> None:
        if tenant_id is None:
            self._stats.clear()
            self._recent_blocked.clear()
        else:
            self._stats.pop(tenant_id, None)
            self._recent_blocked = deque(
                (e for e in self._recent_blocked if e[0] != tenant_id), maxlen=50
            )

    def suggestions(self, tenant_id: str) -> list[dict]:
        bucket = self._stats.get(tenant_id)
        if bucket is None:
            return []
        found = [
            {"origin": origin, "blockedCount": s.blocked, "suggestion": suggest_pattern(origin)}
            for origin, s in bucket.origins.items()
            if s.blocked >= self.suggestion_threshold
        ]
        return sorted(found, key=lambda s: -s["blockedCount"])

    def health(self) -> dict:
        return {
            "status": "healthy",
            "cache": self._decisions.stats(),
            "trackedTenants": len(self._stats),
            "fallbackOrigins": len(self.fallback_origins),
            "development": self.development,
        }


def _ranked(bucket: _TenantStats, kind: str) -> list[dict]:
    rows = [
        {"origin": origin, "count": getattr(s, kind)}
        for origin, s in bucket.origins.items()
        if getattr(s, kind)
    ]
    return sorted(rows, key=lambda r: -r["count"])
