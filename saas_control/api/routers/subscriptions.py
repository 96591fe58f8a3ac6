from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from saas_control.api.deps import CurrentContext, require_any_perm, require_perm
from saas_control.domain.errors import ConflictError, NotFoundError, ValidationError
from saas_control.domain.models import (
    BillingInfoRead,
    PlanChangeCommitRead,
    PlanChangePreviewRead,
    PlanChangeRequest,
    SubscriptionCancelRequest,
    SubscriptionRead,
)
from saas_control.domain.permissions import PERM_ADMIN_SYSTEM, PERM_SUBSCRIPTION_READ, PERM_SUBSCRIPTION_WRITE
from saas_control.services.proration_service import PlanChangeService
from saas_control.services.subscription_service import SubscriptionLifecycleService

router = APIRouter()


def get_subscription_service() -> SubscriptionLifecycleService:
    return SubscriptionLifecycleService()


def get_plan_change_service() -> PlanChangeService:
    return PlanChangeService()


Lifecycle = Annotated[SubscriptionLifecycleService, Depends(get_subscription_service)]
PlanChange = Annotated[PlanChangeService, Depends(get_plan_change_service)]

SubscriptionErrors = (ConflictError, NotFoundError, ValidationError)


def _handle_subscription_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    raise exc


@router.get(
    "/{tenant_id}/subscription",
    response_model=SubscriptionRead,
    dependencies=[Depends(require_any_perm(PERM_SUBSCRIPTION_READ, PERM_ADMIN_SYSTEM))],
)
def get_current_subscription(tenant_id: str, ctx: CurrentContext, lifecycle: Lifecycle) -> SubscriptionRead:
    try:
        return SubscriptionRead.model_validate(lifecycle.get_current(ctx, tenant_id))
    except SubscriptionErrors as exc:
        _handle_subscription_error(exc)
        raise


@router.get(
    "/{tenant_id}/subscriptions",
    response_model=list[SubscriptionRead],
    dependencies=[Depends(require_any_perm(PERM_SUBSCRIPTION_READ, PERM_ADMIN_SYSTEM))],
)
def list_subscriptions(tenant_id: str, ctx: CurrentContext, lifecycle: Lifecycle) -> list[SubscriptionRead]:
    try:
        rows = lifecycle.list_subscriptions(ctx, tenant_id)
    except SubscriptionErrors as exc:
        _handle_subscription_error(exc)
        raise
    return [SubscriptionRead.model_validate(item) for item in rows]


@router.get(
    "/{tenant_id}/subscription/billing-info",
    response_model=BillingInfoRead,
    dependencies=[Depends(require_any_perm(PERM_SUBSCRIPTION_READ, PERM_ADMIN_SYSTEM))],
)
def get_billing_info(tenant_id: str, ctx: CurrentContext, lifecycle: Lifecycle) -> BillingInfoRead:
    try:
        return lifecycle.get_billing_info(ctx, tenant_id)
    except SubscriptionErrors as exc:
        _handle_subscription_error(exc)
        raise


@router.post(
    "/{tenant_id}/subscription/cancel",
    response_model=SubscriptionRead,
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_WRITE))],
)
def cancel_subscription(
    tenant_id: str,
    payload: SubscriptionCancelRequest,
    ctx: CurrentContext,
    lifecycle: Lifecycle,
) -> SubscriptionRead:
    try:
        subscription = lifecycle.cancel(
            ctx,
            tenant_id,
            reason=payload.reason,
            at_period_end=payload.at_period_end,
        )
        return SubscriptionRead.model_validate(subscription)
    except SubscriptionErrors as exc:
        _handle_subscription_error(exc)
        raise


@router.post(
    "/{tenant_id}/subscription/plan-change/preview",
    response_model=PlanChangePreviewRead,
    dependencies=[Depends(require_any_perm(PERM_SUBSCRIPTION_READ, PERM_ADMIN_SYSTEM))],
)
def preview_plan_change(
    tenant_id: str,
    payload: PlanChangeRequest,
    ctx: CurrentContext,
    plan_change: PlanChange,
) -> PlanChangePreviewRead:
    try:
        return plan_change.preview_change(ctx, tenant_id, payload.new_plan_slug, payload.billing_cycle)
    except SubscriptionErrors as exc:
        _handle_subscription_error(exc)
        raise


@router.post(
    "/{tenant_id}/subscription/plan-change",
    response_model=PlanChangeCommitRead,
    dependencies=[Depends(require_perm(PERM_SUBSCRIPTION_WRITE))],
)
def commit_plan_change(
    tenant_id: str,
    payload: PlanChangeRequest,
    ctx: CurrentContext,
    plan_change: PlanChange,
) -> PlanChangeCommitRead:
    try:
        return plan_change.commit_change(ctx, tenant_id, payload.new_plan_slug, payload.billing_cycle)
    except SubscriptionErrors as exc:
        _handle_subscription_error(exc)
        raise
