from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlmodel import Session

from saas_control.domain.errors import ConflictError, ValidationError
from saas_control.domain.models import (
    BillingCycle,
    PlanChangeCommitRead,
    PlanChangePreviewRead,
    PlanDefinition,
    ProrationRead,
    Subscription,
    SubscriptionRead,
    ensure_utc,
    now_utc,
)
from saas_control.domain.state_machine import SubscriptionStatus
from saas_control.infra.audit import write_audit_log_detached
from saas_control.infra.db import get_engine
from saas_control.infra.events import event_bus
from saas_control.infra.logging import get_logger
from saas_control.infra.repository import TenantScopedRepository
from saas_control.infra.tenant import TenantContext
from saas_control.services.plan_catalog_service import FREE_PLAN_SLUG, PlanCatalogService
from saas_control.services.subscription_service import CYCLE_LENGTH_DAYS, SubscriptionLifecycleService

logger = get_logger(__name__)


def calculate_proration(
    current_price: int,
    new_price: int,
    cycle_length_days: int,
    days_remaining: int,
) -> ProrationRead:
    """Mid-cycle charge for moving between two prices, in whole cents.

    Downgrades and lateral moves cost nothing now; upgrades pay the price
    difference pro rata for the days left, rounded half-up.
    """
    if cycle_length_days <= 0:
        raise ValidationError("cycle length must be positive")
    days = max(0, days_remaining)
    difference = new_price - current_price
    prorated = 0
    if difference > 0:
        exact = Decimal(difference * days) / Decimal(cycle_length_days)
        prorated = int(exact.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return ProrationRead(
        price_difference=difference,
        prorated_amount=prorated,
        days_remaining=days,
        cycle_length_days=cycle_length_days,
        is_upgrade=difference > 0,
        is_downgrade=difference < 0,
        immediate_charge=max(0, prorated),
    )


def calculate_first_paid(current_price: int, new_price: int, cycle_length_days: int) -> ProrationRead:
    """No paid period to credit: the full new price is due for a whole cycle."""
    difference = new_price - current_price
    return ProrationRead(
        price_difference=difference,
        prorated_amount=new_price,
        days_remaining=cycle_length_days,
        cycle_length_days=cycle_length_days,
        is_upgrade=difference > 0,
        is_downgrade=difference < 0,
        immediate_charge=max(0, new_price),
    )


def days_until(period_end: datetime, now: datetime) -> int:
    return max(0, (ensure_utc(period_end) - ensure_utc(now)).days)


def plan_price(plan: PlanDefinition, cycle: BillingCycle) -> int:
    price = plan.price_yearly if cycle == BillingCycle.YEARLY else plan.price_monthly
    if price is None:
        raise ValidationError(f"plan {plan.slug} has no {cycle} list price")
    return price


class PlanChangeService:
    def __init__(
        self,
        plan_catalog: PlanCatalogService | None = None,
        lifecycle: SubscriptionLifecycleService | None = None,
    ) -> None:
        self.plans = plan_catalog or PlanCatalogService()
        self.lifecycle = lifecycle or SubscriptionLifecycleService(self.plans)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _preview_in_session(
        self,
        session: Session,
        tenant_id: str,
        new_plan_slug: str,
        billing_cycle: BillingCycle,
        *,
        at: datetime,
    ) -> tuple[PlanChangePreviewRead, Subscription | None]:
        new_plan = self.plans.get_plan_in_session(session, new_plan_slug)
        current = self.lifecycle.current_in_session(session, tenant_id)
        if current is not None and current.status == SubscriptionStatus.CANCELED:
            current = None
        current_slug = current.plan_slug if current is not None else FREE_PLAN_SLUG
        current_plan = self.plans.get_plan_in_session(session, current_slug)

        cycle_length = CYCLE_LENGTH_DAYS[billing_cycle]
        current_price = plan_price(current_plan, billing_cycle)
        new_price = plan_price(new_plan, billing_cycle)
        if (
            current is None
            or current.current_period_end is None
            or ensure_utc(current.current_period_end) <= at
            or current.billing_cycle != billing_cycle
        ):
            proration = calculate_first_paid(current_price, new_price, cycle_length)
        else:
            proration = calculate_proration(
                current_price,
                new_price,
                cycle_length,
                days_until(current.current_period_end, at),
            )
        preview = PlanChangePreviewRead(
            tenant_id=tenant_id,
            current_plan_slug=current_slug,
            new_plan_slug=new_plan.slug,
            billing_cycle=billing_cycle,
            current_price=current_price,
            new_price=new_price,
            proration=proration,
        )
        return preview, current

    def preview_change(
        self,
        ctx: TenantContext,
        tenant_id: str,
        new_plan_slug: str,
        billing_cycle: BillingCycle,
    ) -> PlanChangePreviewRead:
        self.plans.ensure_default_plans()
        with self._session() as session:
            TenantScopedRepository(session, ctx).ensure_tenant(tenant_id)
            preview, _ = self._preview_in_session(session, tenant_id, new_plan_slug, billing_cycle, at=now_utc())
            return preview

    def commit_change(
        self,
        ctx: TenantContext,
        tenant_id: str,
        new_plan_slug: str,
        billing_cycle: BillingCycle,
    ) -> PlanChangeCommitRead:
        self.plans.ensure_default_plans()

        def _operation(session: Session) -> PlanChangeCommitRead:
            repo = TenantScopedRepository(session, ctx)
            repo.ensure_tenant(tenant_id)
            preview, current = self._preview_in_session(
                session, tenant_id, new_plan_slug, billing_cycle, at=now_utc()
            )
            current_cycle = current.billing_cycle if current is not None else BillingCycle.MONTHLY
            if preview.current_plan_slug == preview.new_plan_slug and current_cycle == billing_cycle:
                raise ConflictError("tenant is already on this plan and billing cycle")
            subscription, applied = self.lifecycle.change_plan_in_session(
                repo,
                tenant_id,
                new_plan_slug=preview.new_plan_slug,
                billing_cycle=billing_cycle,
                detail={
                    "from_plan": preview.current_plan_slug,
                    "to_plan": preview.new_plan_slug,
                    "proration": preview.proration.model_dump(mode="json"),
                },
            )
            return PlanChangeCommitRead(
                preview=preview,
                subscription=SubscriptionRead.model_validate(subscription),
                applied=applied,
            )

        try:
            result = self.lifecycle.run_with_slot_retry(_operation)
        except (ValidationError, ConflictError) as exc:
            write_audit_log_detached(
                tenant_id=tenant_id,
                actor_id=ctx.actor_id,
                action="subscription.plan_change_rejected",
                resource="subscription",
                detail={"to_plan": new_plan_slug, "billing_cycle": str(billing_cycle), "error": str(exc)},
            )
            raise
        logger.info(
            "subscription.plan_changed",
            tenant_id=tenant_id,
            from_plan=result.preview.current_plan_slug,
            to_plan=result.preview.new_plan_slug,
            applied=result.applied,
            immediate_charge=result.preview.proration.immediate_charge,
        )
        event_bus.publish_dict(
            "subscription.plan_changed",
            tenant_id,
            {
                "subscription_id": result.subscription.id,
                "to_plan": result.preview.new_plan_slug,
                "applied": result.applied,
                "immediate_charge": result.preview.proration.immediate_charge,
            },
            actor_id=ctx.actor_id,
        )
        return result
