from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass

from saas_control.infra.auth import SYSTEM_TENANT_ID


@dataclass(frozen=True)
class TenantContext:
    """Identity every tenant-scoped read and write executes under.

    A system context bypasses the per-tenant predicate; its writes are still
    audited with `tenant_id` taken from the affected row.
    """

    tenant_id: str
    actor_id: str | None = None
    is_system: bool = False

    @classmethod
    def for_tenant(cls, tenant_id: str, actor_id: str | None = None) -> TenantContext:
        return cls(tenant_id=tenant_id, actor_id=actor_id)


SYSTEM_CONTEXT = TenantContext(tenant_id=SYSTEM_TENANT_ID, actor_id="system", is_system=True)

tenant_id_ctx: ContextVar[str | None] = ContextVar("tenant_id", default=None)
user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)
tenant_context_ctx: ContextVar[TenantContext | None] = ContextVar("tenant_context", default=None)


def set_request_context(tenant_id: str | None, user_id: str | None, *, is_system: bool = False) -> None:
    tenant_id_ctx.set(tenant_id)
    user_id_ctx.set(user_id)
    if tenant_id is None:
        tenant_context_ctx.set(None)
        return
    tenant_context_ctx.set(TenantContext(tenant_id=tenant_id, actor_id=user_id, is_system=is_system))


def get_tenant_id() -> str | None:
    return tenant_id_ctx.get()


def get_user_id() -> str | None:
    return user_id_ctx.get()


def get_tenant_context() -> TenantContext | None:
    return tenant_context_ctx.get()
