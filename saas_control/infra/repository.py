from __future__ import annotations

from typing import Any, TypeVar

from sqlmodel import Session, SQLModel, select
from sqlmodel.sql.expression import SelectOfScalar

from saas_control.domain.errors import NotFoundError
from saas_control.domain.models import AuditLog, Tenant, now_utc
from saas_control.infra.audit import snapshot, write_audit_log
from saas_control.infra.tenant import TenantContext

ModelT = TypeVar("ModelT", bound=SQLModel)


def _owner_column(model: type[SQLModel]) -> Any:
    if model is Tenant:
        return Tenant.id
    return getattr(model, "tenant_id", None)


def _owner_id(row: SQLModel) -> str | None:
    if isinstance(row, Tenant):
        return row.id
    return getattr(row, "tenant_id", None)


class TenantScopedRepository:
    """Single entry point for reads and writes of tenant-owned rows.

    Every select on a tenant-owned model gets `tenant_id == ctx.tenant_id`
    appended unless the context is the system identity. `insert` and `update`
    append an `AuditLog` row to the same session, so the audit entry commits
    or rolls back together with the change it describes. Rows that belong to
    another tenant are reported as missing.
    """

    def __init__(self, session: Session, ctx: TenantContext | None) -> None:
        if ctx is None:
            raise ValueError("tenant context is required")
        self.session = session
        self.ctx = ctx

    def select(self, model: type[ModelT]) -> SelectOfScalar[ModelT]:
        statement = select(model)
        owner = _owner_column(model)
        if owner is not None and not self.ctx.is_system:
            statement = statement.where(owner == self.ctx.tenant_id)
        return statement

    def list(self, statement: SelectOfScalar[ModelT]) -> list[ModelT]:
        return list(self.session.exec(statement).all())

    def first(self, statement: SelectOfScalar[ModelT]) -> ModelT | None:
        return self.session.exec(statement).first()

    def get(self, model: type[ModelT], row_id: str, *, resource: str | None = None) -> ModelT:
        row = self.session.get(model, row_id)
        if row is None or not self.owns(row):
            label = resource or getattr(model, "__tablename__", model.__name__)
            raise NotFoundError(f"{label} not found")
        return row

    def owns(self, row: SQLModel) -> bool:
        if self.ctx.is_system:
            return True
        return _owner_id(row) == self.ctx.tenant_id

    def ensure_tenant(self, tenant_id: str) -> Tenant:
        if not self.ctx.is_system and tenant_id != self.ctx.tenant_id:
            raise NotFoundError("tenant not found")
        tenant = self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")
        return tenant

    def insert(
        self,
        row: ModelT,
        *,
        action: str,
        resource: str,
        detail: dict[str, Any] | None = None,
    ) -> ModelT:
        if not self.owns(row):
            raise NotFoundError("tenant not found")
        self.session.add(row)
        self.session.flush()
        self.audit(
            action=action,
            resource=resource,
            resource_id=getattr(row, "id", None),
            tenant_id=_owner_id(row),
            after=snapshot(row),
            detail=detail,
        )
        return row

    def update(
        self,
        row: ModelT,
        changes: dict[str, Any],
        *,
        action: str,
        resource: str,
        detail: dict[str, Any] | None = None,
    ) -> ModelT:
        if not self.owns(row):
            raise NotFoundError(f"{resource} not found")
        before = snapshot(row)
        for key, value in changes.items():
            setattr(row, key, value)
        if hasattr(row, "updated_at"):
            row.updated_at = now_utc()  # type: ignore[attr-defined]
        self.session.add(row)
        self.session.flush()
        self.audit(
            action=action,
            resource=resource,
            resource_id=getattr(row, "id", None),
            tenant_id=_owner_id(row),
            before=before,
            after=snapshot(row),
            detail=detail,
        )
        return row

    def audit(
        self,
        *,
        action: str,
        resource: str,
        resource_id: str | None = None,
        tenant_id: str | None = None,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        detail: dict[str, Any] | None = None,
    ) -> AuditLog:
        audit_tenant_id = tenant_id
        if audit_tenant_id is None and not self.ctx.is_system:
            audit_tenant_id = self.ctx.tenant_id
        merged_detail = {"system": self.ctx.is_system, **(detail or {})}
        return write_audit_log(
            self.session,
            tenant_id=audit_tenant_id,
            actor_id=self.ctx.actor_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            before=before,
            after=after,
            detail=merged_detail,
        )
