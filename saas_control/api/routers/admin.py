from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from saas_control.api.deps import CurrentContext, require_perm
from saas_control.domain.errors import NotFoundError, ValidationError
from saas_control.domain.models import (
    RecomputeSummaryRequest,
    SubscriptionAnalyticsRead,
    SweepResultRead,
    UsageAnalyticsRead,
    UsageSummaryRead,
)
from saas_control.domain.permissions import PERM_ADMIN_SYSTEM
from saas_control.services.reporting_service import ReportingService
from saas_control.services.usage_ledger_service import UsageLedgerService

router = APIRouter(dependencies=[Depends(require_perm(PERM_ADMIN_SYSTEM))])


def get_reporting_service() -> ReportingService:
    return ReportingService()


def get_usage_ledger_service() -> UsageLedgerService:
    return UsageLedgerService()


Service = Annotated[ReportingService, Depends(get_reporting_service)]
Ledger = Annotated[UsageLedgerService, Depends(get_usage_ledger_service)]


def _handle_admin_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


@router.post("/sweeps/{name}", response_model=SweepResultRead)
def run_sweep(name: str, ctx: CurrentContext, service: Service) -> SweepResultRead:
    try:
        return service.run_sweep(name, actor_id=ctx.actor_id)
    except ValidationError as exc:
        _handle_admin_error(exc)
        raise


@router.get("/analytics/subscriptions", response_model=SubscriptionAnalyticsRead)
def subscription_analytics(
    service: Service,
    start_at: datetime | None = None,
    end_at: datetime | None = None,
) -> SubscriptionAnalyticsRead:
    try:
        return service.subscription_analytics(start_at, end_at)
    except ValidationError as exc:
        _handle_admin_error(exc)
        raise


@router.get("/analytics/usage", response_model=UsageAnalyticsRead)
def usage_analytics(
    service: Service,
    start_at: datetime | None = None,
    end_at: datetime | None = None,
) -> UsageAnalyticsRead:
    try:
        return service.usage_analytics(start_at, end_at)
    except ValidationError as exc:
        _handle_admin_error(exc)
        raise


@router.post("/tenants/{tenant_id}/usage/recompute", response_model=UsageSummaryRead)
def recompute_usage_summary(
    tenant_id: str,
    payload: RecomputeSummaryRequest,
    ctx: CurrentContext,
    ledger: Ledger,
) -> UsageSummaryRead:
    try:
        summary = ledger.recompute_summary(ctx, tenant_id, payload.granularity, payload.period_key)
        return UsageSummaryRead.model_validate(summary)
    except (NotFoundError, ValidationError) as exc:
        _handle_admin_error(exc)
        raise
