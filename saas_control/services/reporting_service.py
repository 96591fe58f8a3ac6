from __future__ import annotations

import os
from collections import defaultdict
from datetime import datetime, timedelta
from enum import StrEnum

from sqlmodel import Session, col, select

from saas_control.domain.errors import ValidationError
from saas_control.domain.models import (
    Granularity,
    PlanAnalyticsRead,
    PlanDefinition,
    Subscription,
    SubscriptionAnalyticsRead,
    SweepResultRead,
    Tenant,
    UsageAnalyticsRead,
    UsagePeriodAnalyticsRead,
    UsageSummary,
    ensure_utc,
    now_utc,
)
from saas_control.domain.state_machine import SubscriptionStatus
from saas_control.infra.audit import purge_audit_logs
from saas_control.infra.db import get_engine
from saas_control.infra.logging import get_logger
from saas_control.infra.repository import TenantScopedRepository
from saas_control.infra.tenant import SYSTEM_CONTEXT
from saas_control.services.billing_event_service import BillingEventService
from saas_control.services.plan_catalog_service import FREE_PLAN_SLUG, PlanCatalogService
from saas_control.services.subscription_service import SubscriptionLifecycleService
from saas_control.services.usage_ledger_service import UsageLedgerService

AUDIT_LOG_RETENTION_DAYS = int(os.getenv("AUDIT_LOG_RETENTION_DAYS", "365"))
DEFAULT_REPORT_WINDOW_DAYS = 30

logger = get_logger(__name__)


class SweepName(StrEnum):
    EXPIRE_TRIALS = "expire-trials"
    SCHEDULED_CANCELLATIONS = "scheduled-cancellations"
    USAGE_RETENTION = "usage-retention"
    AUDIT_RETENTION = "audit-retention"
    BILLING_RETRY = "billing-retry"


def _in_window(value: datetime, start: datetime, end: datetime) -> bool:
    moment = ensure_utc(value)
    return start <= moment <= end


class ReportingService:
    """Cross-tenant aggregates and scheduled sweeps; system identity only."""

    def __init__(
        self,
        plan_catalog: PlanCatalogService | None = None,
        lifecycle: SubscriptionLifecycleService | None = None,
        ledger: UsageLedgerService | None = None,
        billing: BillingEventService | None = None,
    ) -> None:
        self.plans = plan_catalog or PlanCatalogService()
        self.lifecycle = lifecycle or SubscriptionLifecycleService(self.plans)
        self.ledger = ledger or UsageLedgerService()
        self.billing = billing or BillingEventService(self.lifecycle)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _window(self, start_at: datetime | None, end_at: datetime | None) -> tuple[datetime, datetime]:
        end = ensure_utc(end_at) if end_at is not None else now_utc()
        start = ensure_utc(start_at) if start_at is not None else end - timedelta(days=DEFAULT_REPORT_WINDOW_DAYS)
        if start > end:
            raise ValidationError("start_at must not be after end_at")
        return start, end

    def subscription_analytics(
        self,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
    ) -> SubscriptionAnalyticsRead:
        start, end = self._window(start_at, end_at)
        self.plans.ensure_default_plans()
        with self._session() as session:
            plans = list(session.exec(select(PlanDefinition).where(col(PlanDefinition.is_active).is_(True))).all())
            subscriptions = list(session.exec(select(Subscription)).all())
            tenants = list(session.exec(select(Tenant)).all())

        by_plan: dict[str, list[Subscription]] = defaultdict(list)
        for subscription in subscriptions:
            by_plan[subscription.plan_slug].append(subscription)

        plan_rows: list[PlanAnalyticsRead] = []
        for plan in sorted(plans, key=lambda item: (item.sort_order, item.slug)):
            rows = by_plan.get(plan.slug, [])
            active = [item for item in rows if item.status == SubscriptionStatus.ACTIVE]
            new = [item for item in rows if _in_window(item.created_at, start, end)]
            churned = [
                item
                for item in rows
                if item.status == SubscriptionStatus.CANCELED
                and _in_window(item.canceled_at or item.updated_at, start, end)
            ]
            churn_rate = round(len(churned) / len(rows) * 100, 2) if rows else 0.0
            plan_rows.append(
                PlanAnalyticsRead(
                    plan_slug=plan.slug,
                    plan_name=plan.name,
                    total_subscribers=len(rows),
                    active_subscribers=len(active),
                    new_subscribers=len(new),
                    churned_subscribers=len(churned),
                    monthly_revenue=len(active) * (plan.price_monthly or 0),
                    churn_rate=churn_rate,
                )
            )

        current_by_id = {item.id: item for item in subscriptions}
        free_tenants = 0
        for tenant in tenants:
            current = current_by_id.get(tenant.active_subscription_id or "")
            if current is None or current.plan_slug == FREE_PLAN_SLUG:
                free_tenants += 1

        return SubscriptionAnalyticsRead(
            start_at=start,
            end_at=end,
            total_revenue=sum(item.monthly_revenue for item in plan_rows),
            total_active_subscribers=sum(
                item.active_subscribers for item in plan_rows if item.plan_slug != FREE_PLAN_SLUG
            ),
            total_free_tenants=free_tenants,
            plans=plan_rows,
        )

    def usage_analytics(
        self,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
    ) -> UsageAnalyticsRead:
        start, end = self._window(start_at, end_at)
        with self._session() as session:
            summaries = list(
                session.exec(
                    select(UsageSummary).where(UsageSummary.granularity == str(Granularity.MONTHLY))
                ).all()
            )
        month_floor = start.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        periods: dict[str, UsagePeriodAnalyticsRead] = {}
        for summary in summaries:
            if not month_floor <= ensure_utc(summary.period_start) <= end:
                continue
            bucket = periods.get(summary.period_key)
            if bucket is None:
                bucket = UsagePeriodAnalyticsRead(
                    period_key=summary.period_key,
                    tenants=0,
                    uploads=0,
                    analyses=0,
                    api_calls=0,
                    storage_bytes=0,
                )
                periods[summary.period_key] = bucket
            bucket.tenants += 1
            bucket.uploads += summary.uploads
            bucket.analyses += summary.analyses
            bucket.api_calls += summary.api_calls
            bucket.storage_bytes += summary.storage_bytes
        return UsageAnalyticsRead(
            start_at=start,
            end_at=end,
            periods=[periods[key] for key in sorted(periods)],
        )

    def purge_audit_logs(self, *, now: datetime | None = None, retention_days: int | None = None) -> int:
        days = AUDIT_LOG_RETENTION_DAYS if retention_days is None else retention_days
        horizon = ensure_utc(now or now_utc()) - timedelta(days=days)
        with self._session() as session:
            deleted = purge_audit_logs(session, older_than=horizon)
            session.commit()
        logger.info("audit.retention_swept", deleted=deleted, horizon=horizon.isoformat())
        return deleted

    def run_sweep(self, name: str, *, actor_id: str | None = None) -> SweepResultRead:
        try:
            sweep = SweepName(name)
        except ValueError as exc:
            raise ValidationError(f"unknown sweep: {name}") from exc

        if sweep == SweepName.EXPIRE_TRIALS:
            affected = self.lifecycle.expire_trials()
        elif sweep == SweepName.SCHEDULED_CANCELLATIONS:
            affected = self.lifecycle.apply_scheduled_cancellations()
        elif sweep == SweepName.USAGE_RETENTION:
            affected = self.ledger.sweep_retention()
        elif sweep == SweepName.AUDIT_RETENTION:
            affected = self.purge_audit_logs()
        else:
            affected = self.billing.retry_pending()

        ran_at = now_utc()
        with self._session() as session:
            TenantScopedRepository(session, SYSTEM_CONTEXT).audit(
                action=f"admin.sweep.{sweep}",
                resource="sweep",
                detail={"affected": affected, "operator": actor_id},
            )
            session.commit()
        logger.info("admin.sweep_ran", sweep=str(sweep), affected=affected, operator=actor_id)
        return SweepResultRead(sweep=str(sweep), affected=affected, ran_at=ran_at)
