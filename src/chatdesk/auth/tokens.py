"""Access/refresh token issuing and verification (PyJWT, HS256)."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt

from chatdesk.common.config import ChatdeskSettings
from chatdesk.common.exceptions import InvalidTokenError, TokenExpiredError
from chatdesk.common.models import generate_uuid

ACCESS = "access"
REFRESH = "refresh"

MAX_LEEWAY = 30


@dataclass(frozen=True)
class TokenClaims:
    """Verified token payload."""
    sub: str
    role: str
    tenant_id: Optional[str]
    iat: int
    exp: int
    typ: str

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


class TokenService:
    """Signs and verifies session tokens with the process secret."""

    def __init__(self, settings: ChatdeskSettings):
        self._secret = settings.secret_key
        self._algorithm = settings.jwt_algorithm
        self.access_ttl = settings.access_token_ttl
        self.refresh_ttl = settings.refresh_token_ttl
        self._leeway = min(settings.token_leeway, MAX_LEEWAY)

    def _encode(self, user, typ: str, ttl: int, now: Optional[datetime]) -> str:
        issued = now or datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "sub": str(user.id),
            "role": user.role,
            "tenantId": user.tenant_id,
            "typ": typ,
            "iat": issued,
            "exp": issued + timedelta(seconds=ttl),
        }
        if typ == REFRESH:
            payload["jti"] = generate_uuid()
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def issue_access(self, user, now: Optional[datetime] = None) -> str:
        return self._encode(user, ACCESS, self.access_ttl, now)

    def issue_refresh(self, user, now: Optional[datetime] = None) -> str:
        return self._encode(user, REFRESH, self.refresh_ttl, now)

    def issue_pair(self, user) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access(user),
            refresh_token=self.issue_refresh(user),
            expires_in=self.access_ttl,
        )

    def verify(self, token: str, typ: str = ACCESS) -> TokenClaims:
        """Return claims or raise ``InvalidTokenError`` / ``TokenExpiredError``."""
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                leeway=self._leeway,
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError()
        except jwt.PyJWTError:
            raise InvalidTokenError()

        if payload.get("typ") != typ or "role" not in payload:
            raise InvalidTokenError()
        return TokenClaims(
            sub=payload["sub"],
            role=payload["role"],
            tenant_id=payload.get("tenantId"),
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            typ=payload["typ"],
        )


def decode_unverified(token: str) -> dict[str, Any]:
    """Read a token payload without checking signature or expiry.

    Only for client-side scheduling of proactive refreshes.
    """
    return jwt.decode(
        token,
        options={"verify_signature": False, "verify_exp": False},
        algorithms=["HS256", "HS384", "HS512"],
    )


def seconds_until_expiry(token: str, now: Optional[float] = None) -> Optional[float]:
    try:
        exp = decode_unverified(token).get("exp")
    except jwt.PyJWTError:
        return None
    if exp is None:
        return None
    current = now if now is not None else datetime.now(timezone.utc).timestamp()
    return float(exp) - current
