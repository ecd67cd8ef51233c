"""User registration, login, refresh and account management."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatdesk.auth.models import UserModel
from chatdesk.auth.passwords import hash_password, verify_password
from chatdesk.auth.roles import Role, is_master
from chatdesk.auth.tokens import REFRESH, TokenPair, TokenService
from chatdesk.common.exceptions import (
    AuthError,
    ConflictError,
    InvalidRefreshError,
    NotFoundError,
    PermissionDeniedError,
    TenantUnidentifiedError,
    UnauthorizedError,
    ValidationError,
)
from chatdesk.common.models import utcnow
from chatdesk.policy.gate import check_tenant_state
from chatdesk.scoping.scoped import ScopedStore
from chatdesk.tenants.models import TenantModel
from chatdesk.tenants.registry import TenantRegistry
from chatdesk.tenants.service import TenantService
from chatdesk.usage.accountant import QuotaAccountant

logger = logging.getLogger(__name__)


class AuthService:
    def __init__(
        self,
        tokens: TokenService,
        tenants: TenantService,
        registry: TenantRegistry,
        accountant: QuotaAccountant,
    ):
        self.tokens = tokens
        self._tenants = tenants
        self._registry = registry
        self._accountant = accountant

    def _hash(self, password: str) -> str:
        return hash_password(password)

    async def get_by_email(self, session: AsyncSession, email: str) -> UserModel | None:
        result = await session.execute(
            select(UserModel).where(UserModel.email == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def _ensure_email_free(self, session: AsyncSession, email: str) -> None:
        if await self.get_by_email(session, email) is not None:
            raise ConflictError("Email is already registered")

    async def register(
        self,
        session: AsyncSession,
        email: str,
        password: str,
        name: str,
        company_name: Optional[str] = None,
        tenant_slug: Optional[str] = None,
    ) -> tuple[UserModel, TenantModel, TokenPair]:
        """Register a user.

        With ``tenant_slug`` the user joins that tenant as a client and consumes
        one ``maxUsers`` unit. Without it a trial tenant is provisioned and the
        user becomes its owner admin.
        """
        email = email.strip().lower()
        if tenant_slug:
            tenant = await self._registry.find_by_slug(tenant_slug)
            await self._accountant.consume(session, tenant.id, "maxUsers")
            await self._ensure_email_free(session, email)
            user = UserModel(
                email=email, password_hash=self._hash(password), name=name,
                role=Role.client.value, tenant_id=tenant.id,
            )
            session.add(user)
            await session.flush()
        else:
            await self._ensure_email_free(session, email)
            tenant = await self._tenants.create_tenant(
                session, name=company_name or f"{name}'s workspace", email=email, plan="trial",
            )
            user = UserModel(
                email=email, password_hash=self._hash(password), name=name,
                role=Role.admin.value, tenant_id=tenant.id,
            )
            session.add(user)
            await session.flush()
            tenant.owner_id = user.id
            tenant.created_by = user.id
            await session.flush()

        logger.info(
            "User registered",
            extra={"user_id": user.id, "tenant_id": tenant.id, "role": user.role},
        )
        return user, tenant, self.tokens.issue_pair(user)

    async def _tenant_of(self, user: UserModel) -> TenantModel | None:
        if is_master(user.role) or not user.tenant_id:
            return None
        tenant = await self._registry.find_by_id(user.tenant_id, include_inactive=True)
        check_tenant_state(tenant)
        return tenant

    async def login(
        self, session: AsyncSession, email: str, password: str
    ) -> tuple[UserModel, Optional[TenantModel], TokenPair]:
        user = await self.get_by_email(session, email)
        if user is None or not verify_password(password, user.password_hash):
            raise UnauthorizedError("Invalid email or password")
        if not user.is_active:
            raise UnauthorizedError("Account is deactivated")
        tenant = await self._tenant_of(user)
        user.last_login = utcnow()
        await session.flush()
        logger.info("User logged in", extra={"user_id": user.id, "tenant_id": user.tenant_id})
        return user, tenant, self.tokens.issue_pair(user)

    async def refresh(self, session: AsyncSession, refresh_token: str) -> TokenPair:
        try:
            claims = self.tokens.verify(refresh_token, typ=REFRESH)
        except AuthError:
            raise InvalidRefreshError()
        user = await session.get(UserModel, claims.sub)
        if user is None or not user.is_active:
            raise InvalidRefreshError()
        if (claims.tenant_id or None) != (user.tenant_id or None):
            raise InvalidRefreshError()
        await self._tenant_of(user)
        return self.tokens.issue_pair(user)

    async def update_profile(
        self, session: AsyncSession, user_id: str, name: Optional[str] = None
    ) -> UserModel:
        user = await session.get(UserModel, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if name:
            user.name = name
        await session.flush()
        return user

    async def change_password(
        self, session: AsyncSession, user_id: str, current: str, new: str
    ) -> None:
        user = await session.get(UserModel, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not verify_password(current, user.password_hash):
            raise ValidationError("Current password is incorrect")
        user.password_hash = self._hash(new)
        await session.flush()
        logger.info("Password changed", extra={"user_id": user.id})

    async def create_master(
        self, session: AsyncSession, email: str, password: str, name: str = "Master"
    ) -> UserModel:
        await self._ensure_email_free(session, email)
        user = UserModel(
            email=email.strip().lower(), password_hash=self._hash(password), name=name,
            role=Role.master.value, tenant_id=None,
        )
        session.add(user)
        await session.flush()
        logger.info("Master user created", extra={"user_id": user.id})
        return user

    async def create_owner(
        self, session: AsyncSession, tenant: TenantModel, email: str, password: str,
        name: str, created_by: Optional[str] = None,
    ) -> UserModel:
        """Create the tenant's primary admin; owners do not count against ``maxUsers``."""
        await self._ensure_email_free(session, email)
        user = UserModel(
            email=email.strip().lower(), password_hash=self._hash(password), name=name,
            role=Role.admin.value, tenant_id=tenant.id, created_by=created_by,
        )
        session.add(user)
        await session.flush()
        tenant.owner_id = user.id
        await session.flush()
        return user

    # ── Tenant user management ──

    async def create_tenant_user(
        self,
        store: ScopedStore,
        session: AsyncSession,
        email: str,
        password: str,
        name: str,
        role: str,
        created_by: Optional[str] = None,
    ) -> UserModel:
        if store.tenant_id is None:
            raise TenantUnidentifiedError()
        if role == Role.master.value:
            raise PermissionDeniedError("Cannot create master users inside a tenant")
        await self._accountant.consume(session, store.tenant_id, "maxUsers")
        if role == Role.agent.value:
            await self._accountant.consume(session, store.tenant_id, "maxAgents")
        await self._ensure_email_free(session, email)
        user = await store.insert(UserModel, {
            "email": email.strip().lower(),
            "password_hash": self._hash(password),
            "name": name,
            "role": role,
            "created_by": created_by,
            "is_active": True,
        })
        logger.info(
            "Tenant user created",
            extra={"user_id": user.id, "tenant_id": store.tenant_id, "role": role},
        )
        return user

    async def deactivate_user(
        self,
        store: ScopedStore,
        session: AsyncSession,
        user_id: str,
        actor_id: Optional[str],
        owner_id: Optional[str],
    ) -> None:
        if store.tenant_id is None:
            raise TenantUnidentifiedError()
        user = await store.get(UserModel, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.id == actor_id:
            raise ValidationError("You cannot deactivate your own account")
        if user.id == owner_id:
            raise PermissionDeniedError("The tenant owner cannot be deactivated")
        if not user.is_active:
            return
        await store.update(
            UserModel, {"id": user.id},
            {"is_active": False, "deactivated_at": utcnow(), "deactivated_by": actor_id},
        )
        await self._accountant.release(session, store.tenant_id, "maxUsers")
        if user.role == Role.agent.value:
            await self._accountant.release(session, store.tenant_id, "maxAgents")
        logger.info("Tenant user deactivated", extra={"user_id": user.id, "tenant_id": store.tenant_id})
