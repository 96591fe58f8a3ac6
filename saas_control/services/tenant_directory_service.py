from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from saas_control.domain.errors import AuthError, ConflictError, NotFoundError
from saas_control.domain.models import (
    AuditLog,
    AuditLogRead,
    BootstrapAdminRequest,
    Subscription,
    SubscriptionRead,
    Tenant,
    TenantCreate,
    TenantExportRead,
    TenantRead,
    TenantStatus,
    TenantUpdate,
    UsageSummary,
    UsageSummaryRead,
    User,
    ensure_utc,
    now_utc,
)
from saas_control.domain.permissions import SYSTEM_PERMISSION_NAMES, TENANT_ADMIN_PERMISSION_NAMES
from saas_control.domain.state_machine import SubscriptionStatus
from saas_control.infra.auth import hash_password, verify_password, verify_system_key
from saas_control.infra.db import get_engine
from saas_control.infra.logging import get_logger
from saas_control.infra.repository import TenantScopedRepository
from saas_control.infra.tenant import TenantContext
from saas_control.services.plan_catalog_service import PlanCatalogService
from saas_control.services.subscription_service import SubscriptionLifecycleService

logger = get_logger(__name__)


class TenantDirectoryService:
    def __init__(
        self,
        plan_catalog: PlanCatalogService | None = None,
        lifecycle: SubscriptionLifecycleService | None = None,
    ) -> None:
        self.plans = plan_catalog or PlanCatalogService()
        self.lifecycle = lifecycle or SubscriptionLifecycleService(self.plans)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def create_tenant(self, payload: TenantCreate) -> Tenant:
        """Sign a tenant up on the free plan; both rows commit together."""
        self.plans.ensure_default_plans()
        with self._session() as session:
            tenant = Tenant(name=payload.name, email=payload.email)
            repo = TenantScopedRepository(session, TenantContext.for_tenant(tenant.id))
            try:
                repo.insert(tenant, action="tenant.created", resource="tenant")
                self.lifecycle.create_free_in_session(repo, tenant.id)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("tenant name already exists") from exc
            session.refresh(tenant)
        logger.info("tenant.created", tenant_id=tenant.id)
        return tenant

    def get_tenant(self, ctx: TenantContext, tenant_id: str) -> Tenant:
        with self._session() as session:
            return TenantScopedRepository(session, ctx).ensure_tenant(tenant_id)

    def list_tenants(self, ctx: TenantContext) -> list[Tenant]:
        with self._session() as session:
            repo = TenantScopedRepository(session, ctx)
            rows = repo.list(repo.select(Tenant))
        rows.sort(key=lambda item: ensure_utc(item.created_at))
        return rows

    def update_profile(self, ctx: TenantContext, tenant_id: str, payload: TenantUpdate) -> Tenant:
        with self._session() as session:
            repo = TenantScopedRepository(session, ctx)
            tenant = repo.ensure_tenant(tenant_id)
            changes = payload.model_dump(exclude_unset=True)
            repo.update(tenant, changes, action="tenant.updated", resource="tenant")
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("tenant name already exists") from exc
            session.refresh(tenant)
            return tenant

    def suspend_tenant(self, ctx: TenantContext, tenant_id: str) -> Tenant:
        with self._session() as session:
            repo = TenantScopedRepository(session, ctx)
            tenant = repo.ensure_tenant(tenant_id)
            if tenant.status != TenantStatus.SUSPENDED:
                repo.update(tenant, {"status": TenantStatus.SUSPENDED}, action="tenant.suspended", resource="tenant")
                session.commit()
                session.refresh(tenant)
                logger.info("tenant.suspended", tenant_id=tenant_id)
            return tenant

    def anonymize_tenant(self, ctx: TenantContext, tenant_id: str) -> Tenant:
        """Soft-delete: strip identifying fields, keep billing and usage history."""

        def _operation(session: Session) -> Tenant:
            repo = TenantScopedRepository(session, ctx)
            tenant = repo.ensure_tenant(tenant_id)
            current = self.lifecycle.current_in_session(session, tenant_id)
            if current is not None and current.status != SubscriptionStatus.CANCELED:
                self.lifecycle.transition_in_session(
                    repo,
                    current,
                    SubscriptionStatus.CANCELED,
                    action="subscription.canceled",
                    detail={"reason": "tenant_anonymized"},
                )
            repo.update(
                tenant,
                {
                    "name": f"anonymized-{tenant.id}",
                    "email": None,
                    "status": TenantStatus.SUSPENDED,
                    "anonymized_at": now_utc(),
                },
                action="tenant.anonymized",
                resource="tenant",
            )
            for user in session.exec(select(User).where(User.tenant_id == tenant_id)).all():
                user.is_active = False
                user.username = f"anonymized-{user.id}"
                session.add(user)
            return tenant

        tenant = self.lifecycle.run_with_slot_retry(_operation)
        logger.info("tenant.anonymized", tenant_id=tenant_id)
        return tenant

    def export_tenant_data(self, ctx: TenantContext, tenant_id: str) -> TenantExportRead:
        with self._session() as session:
            repo = TenantScopedRepository(session, ctx)
            tenant = repo.ensure_tenant(tenant_id)
            subscriptions = repo.list(repo.select(Subscription).where(Subscription.tenant_id == tenant_id))
            summaries = repo.list(repo.select(UsageSummary).where(UsageSummary.tenant_id == tenant_id))
            audit_logs = repo.list(repo.select(AuditLog).where(AuditLog.tenant_id == tenant_id))
            repo.audit(
                action="tenant.data_exported",
                resource="tenant",
                resource_id=tenant_id,
                tenant_id=tenant_id,
                detail={
                    "subscriptions": len(subscriptions),
                    "usage_summaries": len(summaries),
                    "audit_logs": len(audit_logs),
                },
            )
            session.commit()
        subscriptions.sort(key=lambda item: ensure_utc(item.created_at))
        summaries.sort(key=lambda item: (item.granularity, item.period_key))
        audit_logs.sort(key=lambda item: ensure_utc(item.ts))
        return TenantExportRead(
            tenant=TenantRead.model_validate(tenant),
            subscriptions=[SubscriptionRead.model_validate(item) for item in subscriptions],
            usage_summaries=[UsageSummaryRead.model_validate(item) for item in summaries],
            audit_logs=[AuditLogRead.model_validate(item) for item in audit_logs],
            exported_at=now_utc(),
        )

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            tenant = session.get(Tenant, payload.tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")
            tenant_users = session.exec(select(User).where(User.tenant_id == payload.tenant_id)).all()
            if tenant_users:
                raise ConflictError("tenant already initialized")
            admin_user = User(
                tenant_id=payload.tenant_id,
                username=payload.username,
                password_hash=hash_password(payload.password),
                permissions=list(TENANT_ADMIN_PERMISSION_NAMES),
            )
            repo = TenantScopedRepository(session, TenantContext.for_tenant(payload.tenant_id, admin_user.id))
            repo.insert(admin_user, action="user.bootstrapped", resource="user")
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("username already exists in tenant") from exc
            session.refresh(admin_user)
            return admin_user

    def list_users(self, ctx: TenantContext, tenant_id: str) -> list[User]:
        with self._session() as session:
            repo = TenantScopedRepository(session, ctx)
            repo.ensure_tenant(tenant_id)
            return repo.list(repo.select(User).where(User.tenant_id == tenant_id))

    def dev_login(self, tenant_id: str, username: str, password: str) -> tuple[User, list[str]]:
        with self._session() as session:
            statement = select(User).where(User.tenant_id == tenant_id).where(User.username == username)
            user = session.exec(statement).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if not verify_password(password, user.password_hash):
                raise AuthError("invalid credentials")
            tenant = session.get(Tenant, tenant_id)
            if tenant is None or tenant.status == TenantStatus.SUSPENDED:
                raise AuthError("tenant suspended")
        return user, sorted(set(user.permissions))

    def system_login(self, operator: str, api_key: str) -> list[str]:
        if not verify_system_key(api_key):
            logger.warning("identity.system_login_rejected", operator=operator)
            raise AuthError("invalid system credentials")
        logger.info("identity.system_login", operator=operator)
        return list(SYSTEM_PERMISSION_NAMES)
