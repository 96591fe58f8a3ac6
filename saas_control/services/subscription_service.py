from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from saas_control.domain.errors import ConflictError, InvariantViolation, NotFoundError, ValidationError
from saas_control.domain.models import (
    BillingCycle,
    BillingInfoRead,
    Subscription,
    Tenant,
    ensure_utc,
    now_utc,
)
from saas_control.domain.state_machine import SubscriptionStatus, can_subscription_transition
from saas_control.infra.audit import write_audit_log_detached
from saas_control.infra.db import get_engine
from saas_control.infra.events import event_bus
from saas_control.infra.logging import get_logger
from saas_control.infra.repository import TenantScopedRepository
from saas_control.infra.tenant import SYSTEM_CONTEXT, TenantContext
from saas_control.services.plan_catalog_service import FREE_PLAN_SLUG, PlanCatalogService

SLOT_RETRY_LIMIT = 3

CYCLE_LENGTH_DAYS: dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.YEARLY: 365,
}

T = TypeVar("T")

logger = get_logger(__name__)


def _differs(old: Any, new: Any) -> bool:
    if isinstance(old, datetime) and isinstance(new, datetime):
        return ensure_utc(old) != ensure_utc(new)
    return bool(old != new)


class SubscriptionLifecycleService:
    """Owns the single current subscription of every tenant.

    The tenant row carries `active_subscription_id`; it only ever moves by a
    conditional UPDATE against the value read at the start of the operation.
    A lost race or a hit on the partial unique index surfaces as
    `InvariantViolation` and the whole operation is replayed in a fresh
    transaction, up to `SLOT_RETRY_LIMIT` times.
    """

    def __init__(self, plan_catalog: PlanCatalogService | None = None) -> None:
        self.plans = plan_catalog or PlanCatalogService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def run_with_slot_retry(self, operation: Callable[[Session], T]) -> T:
        last_error: Exception | None = None
        for attempt in range(1, SLOT_RETRY_LIMIT + 1):
            with self._session() as session:
                try:
                    result = operation(session)
                    session.commit()
                    return result
                except (InvariantViolation, IntegrityError) as exc:
                    session.rollback()
                    last_error = exc
                    logger.warning("subscription.slot_conflict", attempt=attempt, error=str(exc))
        raise ConflictError("active subscription changed concurrently, retry later") from last_error

    def _swap_slot(self, session: Session, tenant_id: str, expected: str | None, new: str | None) -> None:
        slot = col(Tenant.active_subscription_id)
        statement = (
            sa.update(Tenant)
            .where(col(Tenant.id) == tenant_id)
            .where(slot.is_(None) if expected is None else slot == expected)
            .values(active_subscription_id=new, updated_at=now_utc())
        )
        result = session.execute(statement)
        if result.rowcount != 1:
            raise InvariantViolation(f"slot for tenant {tenant_id} no longer holds {expected}")

    def current_in_session(self, session: Session, tenant_id: str) -> Subscription | None:
        tenant = session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")
        session.refresh(tenant)
        if tenant.active_subscription_id is None:
            return None
        return session.get(Subscription, tenant.active_subscription_id)

    def transition_in_session(
        self,
        repo: TenantScopedRepository,
        subscription: Subscription,
        target: SubscriptionStatus,
        *,
        action: str,
        changes: dict[str, Any] | None = None,
        detail: dict[str, Any] | None = None,
    ) -> Subscription:
        source = SubscriptionStatus(subscription.status)
        if source == SubscriptionStatus.CANCELED and target == SubscriptionStatus.CANCELED:
            return subscription
        if not can_subscription_transition(source, target):
            raise ValidationError(f"illegal subscription transition: {source} -> {target}")

        pending = {"status": target, **(changes or {})}
        if target == SubscriptionStatus.CANCELED:
            pending.setdefault("canceled_at", now_utc())
        diff = {key: value for key, value in pending.items() if _differs(getattr(subscription, key), value)}
        if not diff:
            return subscription

        repo.update(subscription, diff, action=action, resource="subscription", detail=detail)
        if target == SubscriptionStatus.CANCELED:
            tenant = repo.session.get(Tenant, subscription.tenant_id)
            if tenant is not None and tenant.active_subscription_id == subscription.id:
                self._swap_slot(repo.session, subscription.tenant_id, subscription.id, None)
        if source != target:
            logger.info(
                "subscription.transitioned",
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
                source=str(source),
                target=str(target),
            )
        return subscription

    def open_in_session(
        self,
        repo: TenantScopedRepository,
        subscription: Subscription,
        *,
        action: str = "subscription.created",
        detail: dict[str, Any] | None = None,
    ) -> Subscription:
        """Make `subscription` the tenant's current one, canceling whatever held the slot."""
        session = repo.session
        current = self.current_in_session(session, subscription.tenant_id)
        expected = current.id if current is not None else None
        if current is not None and current.status != SubscriptionStatus.CANCELED:
            self.transition_in_session(
                repo,
                current,
                SubscriptionStatus.CANCELED,
                action="subscription.canceled",
                detail={"reason": "superseded", "superseded_by": subscription.id},
            )
            expected = None
        repo.insert(subscription, action=action, resource="subscription", detail=detail)
        self._swap_slot(session, subscription.tenant_id, expected, subscription.id)
        return subscription

    def create_free_in_session(self, repo: TenantScopedRepository, tenant_id: str) -> Subscription:
        self.plans.get_plan_in_session(repo.session, FREE_PLAN_SLUG)
        subscription = Subscription(
            tenant_id=tenant_id,
            plan_slug=FREE_PLAN_SLUG,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=BillingCycle.MONTHLY,
            current_period_start=now_utc(),
        )
        return self.open_in_session(repo, subscription, detail={"source": "signup"})

    def upsert_from_external_event_in_session(
        self,
        session: Session,
        *,
        tenant_id: str,
        external_subscription_id: str,
        plan_slug: str,
        status: SubscriptionStatus,
        period_start: datetime | None,
        period_end: datetime | None,
        trial_end: datetime | None = None,
        cancel_at: datetime | None = None,
        customer_id: str | None = None,
        billing_cycle: BillingCycle | None = None,
        detail: dict[str, Any] | None = None,
    ) -> Subscription:
        repo = TenantScopedRepository(session, SYSTEM_CONTEXT)
        repo.ensure_tenant(tenant_id)
        self.plans.get_plan_in_session(session, plan_slug)

        existing = session.exec(
            select(Subscription).where(Subscription.external_subscription_id == external_subscription_id)
        ).first()
        if existing is not None:
            if existing.tenant_id != tenant_id:
                raise ValidationError("external subscription belongs to a different tenant")
            changes: dict[str, Any] = {
                "plan_slug": plan_slug,
                "current_period_start": period_start,
                "current_period_end": period_end,
                "trial_end": trial_end,
                "cancel_at": cancel_at,
            }
            if customer_id is not None:
                changes["external_customer_id"] = customer_id
            if billing_cycle is not None:
                changes["billing_cycle"] = billing_cycle
            if existing.pending_plan_slug is not None and existing.pending_plan_slug == plan_slug:
                changes["pending_plan_slug"] = None
            return self.transition_in_session(
                repo,
                existing,
                status,
                action=f"subscription.{status}" if status != existing.status else "subscription.updated",
                changes=changes,
                detail=detail,
            )

        subscription = Subscription(
            tenant_id=tenant_id,
            plan_slug=plan_slug,
            external_subscription_id=external_subscription_id,
            external_customer_id=customer_id,
            status=status,
            billing_cycle=billing_cycle or BillingCycle.MONTHLY,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_end=trial_end,
            cancel_at=cancel_at,
        )
        if status == SubscriptionStatus.CANCELED:
            subscription.canceled_at = now_utc()
            repo.insert(subscription, action="subscription.created", resource="subscription", detail=detail)
            return subscription
        return self.open_in_session(repo, subscription, detail=detail)

    def upsert_from_external_event(self, **kwargs: Any) -> Subscription:
        return self.run_with_slot_retry(lambda session: self.upsert_from_external_event_in_session(session, **kwargs))

    def get_current(self, ctx: TenantContext, tenant_id: str) -> Subscription:
        with self._session() as session:
            TenantScopedRepository(session, ctx).ensure_tenant(tenant_id)
            current = self.current_in_session(session, tenant_id)
            if current is None:
                raise NotFoundError("no current subscription")
            return current

    def list_subscriptions(self, ctx: TenantContext, tenant_id: str) -> list[Subscription]:
        with self._session() as session:
            repo = TenantScopedRepository(session, ctx)
            repo.ensure_tenant(tenant_id)
            rows = repo.list(repo.select(Subscription).where(Subscription.tenant_id == tenant_id))
        rows.sort(key=lambda item: ensure_utc(item.created_at), reverse=True)
        return rows

    def get_billing_info(self, ctx: TenantContext, tenant_id: str) -> BillingInfoRead:
        self.plans.ensure_default_plans()
        with self._session() as session:
            TenantScopedRepository(session, ctx).ensure_tenant(tenant_id)
            now = now_utc()
            plan, subscription = self.plans.resolve_entitled_plan(session, tenant_id, at=now)
            current = subscription or self.current_in_session(session, tenant_id)
            next_billing: datetime | None = None
            days_until: int | None = None
            if current is not None and current.current_period_end is not None:
                next_billing = ensure_utc(current.current_period_end)
                days_until = max(0, (next_billing - now).days)
            return BillingInfoRead(
                tenant_id=tenant_id,
                plan_slug=plan.slug,
                status=current.status if current is not None else SubscriptionStatus.ACTIVE,
                billing_cycle=current.billing_cycle if current is not None else BillingCycle.MONTHLY,
                next_billing_date=next_billing,
                days_until_billing=days_until,
                monthly_price=plan.price_monthly,
                yearly_price=plan.price_yearly,
            )

    def _period_after_change(
        self,
        session: Session,
        current: Subscription | None,
        plan_slug: str,
        billing_cycle: BillingCycle,
    ) -> dict[str, Any]:
        """Billing period for a plan switched in place.

        A free plan carries no period end. A paid plan keeps a running period of
        the same cycle, and opens a fresh one when there is none, it lapsed, or
        the cycle changes.
        """
        now = now_utc()
        plan = self.plans.get_plan_in_session(session, plan_slug)
        price = plan.price_yearly if billing_cycle == BillingCycle.YEARLY else plan.price_monthly
        if not price:
            return {"current_period_start": now, "current_period_end": None}
        if (
            current is not None
            and current.current_period_end is not None
            and ensure_utc(current.current_period_end) > now
            and current.billing_cycle == billing_cycle
        ):
            return {}
        return {
            "current_period_start": now,
            "current_period_end": now + timedelta(days=CYCLE_LENGTH_DAYS[billing_cycle]),
        }

    def change_plan_in_session(
        self,
        repo: TenantScopedRepository,
        tenant_id: str,
        *,
        new_plan_slug: str,
        billing_cycle: BillingCycle,
        detail: dict[str, Any],
    ) -> tuple[Subscription, bool]:
        """Switch plan in place, or record a pending change for externally billed subscriptions.

        Returns the subscription and whether the new plan is already in effect.
        """
        current = self.current_in_session(repo.session, tenant_id)
        if current is None or current.status == SubscriptionStatus.CANCELED:
            subscription = Subscription(
                tenant_id=tenant_id,
                plan_slug=new_plan_slug,
                status=SubscriptionStatus.ACTIVE,
                billing_cycle=billing_cycle,
                **self._period_after_change(repo.session, None, new_plan_slug, billing_cycle),
            )
            self.open_in_session(
                repo,
                subscription,
                action="subscription.plan_changed",
                detail={**detail, "applied": True},
            )
            return subscription, True

        if current.external_subscription_id is None:
            repo.update(
                current,
                {
                    "plan_slug": new_plan_slug,
                    "billing_cycle": billing_cycle,
                    "pending_plan_slug": None,
                    **self._period_after_change(repo.session, current, new_plan_slug, billing_cycle),
                },
                action="subscription.plan_changed",
                resource="subscription",
                detail={**detail, "applied": True},
            )
            return current, True

        repo.update(
            current,
            {
                "pending_plan_slug": new_plan_slug,
                "detail": {**current.detail, "pending_billing_cycle": str(billing_cycle)},
            },
            action="subscription.plan_changed",
            resource="subscription",
            detail={**detail, "applied": False},
        )
        return current, False

    def cancel(
        self,
        ctx: TenantContext,
        tenant_id: str,
        *,
        reason: str | None = None,
        at_period_end: bool = False,
    ) -> Subscription:
        def _operation(session: Session) -> Subscription:
            repo = TenantScopedRepository(session, ctx)
            repo.ensure_tenant(tenant_id)
            current = self.current_in_session(session, tenant_id)
            if current is None or current.status == SubscriptionStatus.CANCELED:
                raise NotFoundError("no active subscription to cancel")
            detail = {"reason": reason, "at_period_end": at_period_end}
            if at_period_end and current.current_period_end is not None:
                repo.update(
                    current,
                    {"cancel_at": current.current_period_end},
                    action="subscription.cancel_scheduled",
                    resource="subscription",
                    detail=detail,
                )
                return current
            return self.transition_in_session(
                repo,
                current,
                SubscriptionStatus.CANCELED,
                action="subscription.canceled",
                detail=detail,
            )

        try:
            subscription = self.run_with_slot_retry(_operation)
        except NotFoundError:
            write_audit_log_detached(
                tenant_id=tenant_id,
                actor_id=ctx.actor_id,
                action="subscription.cancel_rejected",
                resource="subscription",
                detail={"reason": reason, "outcome": "not_found"},
            )
            raise
        event_type = "subscription.canceled"
        if subscription.status != SubscriptionStatus.CANCELED:
            event_type = "subscription.cancel_scheduled"
        event_bus.publish_dict(
            event_type,
            subscription.tenant_id,
            {"subscription_id": subscription.id, "reason": reason},
            actor_id=ctx.actor_id,
        )
        return subscription

    def expire_trials(self, *, now: datetime | None = None) -> int:
        moment = now or now_utc()
        with self._session() as session:
            repo = TenantScopedRepository(session, SYSTEM_CONTEXT)
            candidates = repo.list(
                repo.select(Subscription)
                .where(col(Subscription.trial_end).is_not(None))
                .where(col(Subscription.status).in_([SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE]))
            )
            expired = [
                item
                for item in candidates
                if item.trial_end is not None and ensure_utc(item.trial_end) < ensure_utc(moment)
            ]
            for subscription in expired:
                self.transition_in_session(
                    repo,
                    subscription,
                    SubscriptionStatus.PAST_DUE,
                    action="subscription.trial_expired",
                    detail={"trial_end": str(subscription.trial_end)},
                )
            session.commit()
        if expired:
            logger.info("subscription.trials_expired", count=len(expired))
        return len(expired)

    def apply_scheduled_cancellations(self, *, now: datetime | None = None) -> int:
        """Cancel subscriptions whose `cancel_at` has passed and release their slots."""
        moment = now or now_utc()
        with self._session() as session:
            repo = TenantScopedRepository(session, SYSTEM_CONTEXT)
            candidates = repo.list(
                repo.select(Subscription)
                .where(col(Subscription.cancel_at).is_not(None))
                .where(col(Subscription.status) != SubscriptionStatus.CANCELED)
            )
            due = [
                item
                for item in candidates
                if item.cancel_at is not None and ensure_utc(item.cancel_at) <= ensure_utc(moment)
            ]
            for subscription in due:
                self.transition_in_session(
                    repo,
                    subscription,
                    SubscriptionStatus.CANCELED,
                    action="subscription.canceled",
                    detail={"reason": "scheduled", "cancel_at": str(subscription.cancel_at)},
                )
            session.commit()
        for subscription in due:
            event_bus.publish_dict(
                "subscription.canceled",
                subscription.tenant_id,
                {"subscription_id": subscription.id, "reason": "scheduled"},
                actor_id=SYSTEM_CONTEXT.actor_id,
            )
        if due:
            logger.info("subscription.scheduled_cancellations_applied", count=len(due))
        return len(due)
