from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlmodel import Session, SQLModel, col

from saas_control.domain.models import AuditLog
from saas_control.infra.db import get_engine
from saas_control.infra.logging import get_logger

logger = get_logger(__name__)


def snapshot(row: SQLModel | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return row.model_dump(mode="json")


def write_audit_log(
    session: Session,
    *,
    tenant_id: str | None,
    actor_id: str | None,
    action: str,
    resource: str,
    resource_id: str | None = None,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    detail: dict[str, Any] | None = None,
) -> AuditLog:
    """Append an audit row to the caller's transaction; the caller commits."""
    log = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        resource=resource,
        resource_id=resource_id,
        before=before,
        after=after,
        detail=detail or {},
    )
    session.add(log)
    return log


def write_audit_log_detached(
    *,
    tenant_id: str | None,
    actor_id: str | None,
    action: str,
    resource: str,
    resource_id: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Record a rejected or failed attempt after the business transaction rolled back."""
    with Session(get_engine()) as session:
        write_audit_log(
            session,
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            detail=detail,
        )
        session.commit()
    logger.info("audit.attempt_recorded", action=action, tenant_id=tenant_id, resource_id=resource_id)


def purge_audit_logs(session: Session, *, older_than: datetime) -> int:
    result = session.execute(sa.delete(AuditLog).where(col(AuditLog.ts) < older_than))
    return int(result.rowcount or 0)
