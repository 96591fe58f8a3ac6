from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from saas_control.api.deps import CurrentContext, require_any_perm, require_perm
from saas_control.domain.errors import NotFoundError, QuotaExceededError, ValidationError
from saas_control.domain.models import (
    Granularity,
    LimitType,
    QuotaCheckRead,
    UsageEventRead,
    UsageEventType,
    UsageGateRequest,
    UsageOverviewRead,
    UsageRecordRequest,
    UsageSummaryRead,
)
from saas_control.domain.permissions import PERM_ADMIN_SYSTEM, PERM_USAGE_READ, PERM_USAGE_WRITE
from saas_control.services.quota_service import QuotaService
from saas_control.services.usage_ledger_service import UsageLedgerService

router = APIRouter()


def get_usage_ledger_service() -> UsageLedgerService:
    return UsageLedgerService()


def get_quota_service() -> QuotaService:
    return QuotaService()


Ledger = Annotated[UsageLedgerService, Depends(get_usage_ledger_service)]
Quota = Annotated[QuotaService, Depends(get_quota_service)]


def _handle_usage_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if isinstance(exc, QuotaExceededError):
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"message": "quota exceeded", "quota": exc.verdict.model_dump(mode="json")},
        ) from exc
    raise exc


@router.post(
    "/{tenant_id}/usage/events",
    response_model=UsageEventRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_USAGE_WRITE))],
)
def record_usage(
    tenant_id: str,
    payload: UsageRecordRequest,
    ctx: CurrentContext,
    ledger: Ledger,
) -> UsageEventRead:
    try:
        event = ledger.record(
            ctx,
            tenant_id,
            payload.event_type,
            resource_ref=payload.resource_ref,
            metadata=payload.metadata,
        )
        return UsageEventRead.model_validate(event)
    except (NotFoundError, ValidationError) as exc:
        _handle_usage_error(exc)
        raise


@router.post(
    "/{tenant_id}/usage/gate",
    response_model=QuotaCheckRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_USAGE_WRITE))],
)
def gate_usage(
    tenant_id: str,
    payload: UsageGateRequest,
    ctx: CurrentContext,
    quota: Quota,
) -> QuotaCheckRead:
    try:
        _, verdict = quota.gate(
            ctx,
            tenant_id,
            payload.limit_type,
            payload.event_type,
            resource_ref=payload.resource_ref,
            metadata=payload.metadata,
        )
        return verdict
    except (NotFoundError, ValidationError, QuotaExceededError) as exc:
        _handle_usage_error(exc)
        raise


@router.get(
    "/{tenant_id}/usage/quota/{limit_type}",
    response_model=QuotaCheckRead,
    dependencies=[Depends(require_any_perm(PERM_USAGE_READ, PERM_ADMIN_SYSTEM))],
)
def check_quota(tenant_id: str, limit_type: LimitType, ctx: CurrentContext, quota: Quota) -> QuotaCheckRead:
    try:
        return quota.check(ctx, tenant_id, limit_type)
    except (NotFoundError, ValidationError) as exc:
        _handle_usage_error(exc)
        raise


@router.get(
    "/{tenant_id}/usage/overview",
    response_model=UsageOverviewRead,
    dependencies=[Depends(require_any_perm(PERM_USAGE_READ, PERM_ADMIN_SYSTEM))],
)
def usage_overview(tenant_id: str, ctx: CurrentContext, quota: Quota) -> UsageOverviewRead:
    try:
        return quota.get_usage_overview(ctx, tenant_id)
    except (NotFoundError, ValidationError) as exc:
        _handle_usage_error(exc)
        raise


@router.get(
    "/{tenant_id}/usage/summaries",
    response_model=list[UsageSummaryRead],
    dependencies=[Depends(require_any_perm(PERM_USAGE_READ, PERM_ADMIN_SYSTEM))],
)
def list_usage_summaries(
    tenant_id: str,
    ctx: CurrentContext,
    ledger: Ledger,
    granularity: Granularity = Granularity.MONTHLY,
    limit: Annotated[int, Query(ge=1, le=366)] = 12,
) -> list[UsageSummaryRead]:
    if granularity == Granularity.HOURLY:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="hourly summaries are not kept")
    try:
        rows = ledger.list_summaries(ctx, tenant_id, granularity=granularity, limit=limit)
    except (NotFoundError, ValidationError) as exc:
        _handle_usage_error(exc)
        raise
    return [UsageSummaryRead.model_validate(item) for item in rows]


@router.get(
    "/{tenant_id}/usage/events",
    response_model=list[UsageEventRead],
    dependencies=[Depends(require_any_perm(PERM_USAGE_READ, PERM_ADMIN_SYSTEM))],
)
def list_usage_events(
    tenant_id: str,
    ctx: CurrentContext,
    ledger: Ledger,
    event_type: UsageEventType | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> list[UsageEventRead]:
    try:
        rows = ledger.list_events(ctx, tenant_id, event_type=event_type, limit=limit)
    except (NotFoundError, ValidationError) as exc:
        _handle_usage_error(exc)
        raise
    return [UsageEventRead.model_validate(item) for item in rows]
