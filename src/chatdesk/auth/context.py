"""Per-request identity threaded through handlers and storage calls."""

from dataclasses import dataclass, field
from typing import Optional

from chatdesk.auth.models import UserModel
from chatdesk.auth.roles import Role
from chatdesk.auth.tokens import TokenClaims
from chatdesk.tenants.models import TenantModel


@dataclass
class RequestContext:
    """Who is calling and on behalf of which tenant.

    For master sessions ``tenant`` is None and ``is_master`` is True;
    ``master_scope`` carries an explicit ``?tenantId=`` selector if given.
    """

    user: Optional[UserModel] = None
    claims: Optional[TokenClaims] = None
    tenant: Optional[TenantModel] = None
    is_master: bool = False
    resolved_by: Optional[str] = None
    master_scope: Optional[str] = None
    extras: dict = field(default_factory=dict)

    @property
    def tenant_id(self) -> Optional[str]:
        return self.tenant.id if self.tenant is not None else None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user is not None else None

    @property
    def role(self) -> Optional[str]:
        return self.user.role if self.user is not None else None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @classmethod
    def system(cls, tenant: Optional[TenantModel] = None) -> "RequestContext":
        """Context for CLI and background jobs acting with master rights."""
        user = UserModel(id="system", email="system@chatdesk.local", name="system",
                         role=Role.master.value, password_hash="!", tenant_id=None)
        return cls(user=user, tenant=tenant, is_master=tenant is None,
                   resolved_by="system")

    def log_extra(self) -> dict:
        return {"tenant_id": self.tenant_id, "user_id": self.user_id}
