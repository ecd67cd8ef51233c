"""Presigned upload/download URLs for tenant file storage."""

import re
from typing import Any, Optional
from urllib.parse import quote

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from chatdesk.common.exceptions import PermissionDeniedError, ValidationError
from chatdesk.common.models import generate_uuid

KEY_PREFIX = "tenants"
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(filename: str) -> str:
    name = _UNSAFE.sub("-", filename.strip().rsplit("/", 1)[-1]).strip("-.")
    return name[:120] or "file"


def tenant_prefix(tenant_id: str) -> str:
    return f"{KEY_PREFIX}/{tenant_id}/"


def object_key(tenant_id: str, filename: str, folder: str = "uploads") -> str:
    """``tenants/{tenantId}/{folder}/{uuid}-{filename}``"""
    return f"{tenant_prefix(tenant_id)}{folder}/{generate_uuid()}-{safe_filename(filename)}"


class PresignedStorage:
    """Signs time-limited PUT/GET grants for keys under one tenant's prefix."""

    def __init__(self, secret_key: str, base_url: str, ttl: int = 900):
        self._serializer = URLSafeTimedSerializer(secret_key, salt="chatdesk-storage")
        self.base_url = base_url.rstrip("/")
        self.ttl = ttl

    def _url(self, method: str, tenant_id: str, key: str, extra: Optional[dict] = None) -> str:
        if not key.startswith(tenant_prefix(tenant_id)):
            raise PermissionDeniedError("Storage key is outside the tenant namespace")
        token = self._serializer.dumps({"m": method, "t": tenant_id, "k": key, **(extra or {})})
        return f"{self.base_url}/{quote(key)}?signature={token}"

    def presign_put(self, tenant_id: str, key: str, size: int, content_type: str) -> dict[str, Any]:
        return {
            "url": self._url("PUT", tenant_id, key, {"s": size, "c": content_type}),
            "method": "PUT",
            "key": key,
            "headers": {"Content-Type": content_type},
            "expiresIn": self.ttl,
        }

    def presign_get(self, tenant_id: str, key: str) -> dict[str, Any]:
        return {"url": self._url("GET", tenant_id, key), "method": "GET", "key": key, "expiresIn": self.ttl}

    def verify(self, token: str, method: str, key: str) -> dict:
        """Check a signature presented back to the storage endpoint."""
        try:
            grant = self._serializer.loads(token, max_age=self.ttl)
        except SignatureExpired:
            raise ValidationError("Storage URL has expired")
        except BadSignature:
            raise PermissionDeniedError("Invalid storage signature")
        if grant.get("m") != method or grant.get("k") != key:
            raise PermissionDeniedError("Storage signature does not cover this request")
        return grant
