from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlmodel import Session

from saas_control.domain.errors import QuotaExceededError, ValidationError
from saas_control.domain.models import (
    Granularity,
    LimitType,
    PlanDefinition,
    QuotaCheckRead,
    UsageEvent,
    UsageEventType,
    UsageOverviewRead,
    UsageSummaryRead,
    ensure_utc,
    now_utc,
)
from saas_control.domain.plan_seeds import UNBOUNDED
from saas_control.infra.audit import write_audit_log_detached
from saas_control.infra.db import get_engine
from saas_control.infra.logging import get_logger
from saas_control.infra.redis_state import decr_window, hourly_window_key, incr_window, read_window
from saas_control.infra.repository import TenantScopedRepository
from saas_control.infra.tenant import TenantContext
from saas_control.services.plan_catalog_service import PlanCatalogService, is_unbounded
from saas_control.services.usage_ledger_service import (
    HOURLY_WINDOW_TTL_SECONDS,
    UsageLedgerService,
    event_quantity,
    period_bounds,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class LimitRule:
    plan_key: str
    default: int
    granularity: Granularity
    column: str
    event_type: UsageEventType


LIMIT_RULES: dict[LimitType, LimitRule] = {
    LimitType.UPLOADS: LimitRule(
        "uploads_per_month", 3, Granularity.MONTHLY, "uploads", UsageEventType.UPLOAD
    ),
    LimitType.ANALYSES: LimitRule(
        "analyses_per_month", 10, Granularity.MONTHLY, "analyses", UsageEventType.ANALYSIS
    ),
    LimitType.API_CALLS: LimitRule(
        "api_calls_per_month", 100, Granularity.MONTHLY, "api_calls", UsageEventType.API_CALL
    ),
    LimitType.STORAGE: LimitRule(
        "storage_limit", 5242880, Granularity.MONTHLY, "storage_bytes", UsageEventType.STORAGE_DELTA
    ),
    LimitType.API_CALLS_DAILY: LimitRule(
        "api_calls_per_day", UNBOUNDED, Granularity.DAILY, "api_calls", UsageEventType.API_CALL
    ),
    LimitType.API_CALLS_HOURLY: LimitRule(
        "rate_limit_per_hour", UNBOUNDED, Granularity.HOURLY, "api_calls", UsageEventType.API_CALL
    ),
}


def resolve_limit(plan: PlanDefinition, limit_type: LimitType) -> int | None:
    rule = LIMIT_RULES[limit_type]
    value = plan.limits.get(rule.plan_key, rule.default)
    if is_unbounded(value):
        return None
    return int(value)


def build_verdict(
    limit_type: LimitType,
    period_key: str,
    plan_slug: str,
    current: int,
    limit: int | None,
) -> QuotaCheckRead:
    if limit is None:
        return QuotaCheckRead(
            limit_type=limit_type,
            period_key=period_key,
            plan_slug=plan_slug,
            current=current,
            limit=None,
            remaining=None,
            exceeded=False,
        )
    return QuotaCheckRead(
        limit_type=limit_type,
        period_key=period_key,
        plan_slug=plan_slug,
        current=current,
        limit=limit,
        remaining=max(0, limit - current),
        exceeded=current >= limit,
    )


class QuotaService:
    """Allow/deny decisions against the governing plan.

    `check` is a pure read. `gate` pairs the decision with the ledger write:
    the counter moves through a conditional UPDATE bounded by the limit, so
    two callers racing on the last unit cannot both pass.
    """

    def __init__(
        self,
        plan_catalog: PlanCatalogService | None = None,
        ledger: UsageLedgerService | None = None,
    ) -> None:
        self.plans = plan_catalog or PlanCatalogService()
        self.ledger = ledger or UsageLedgerService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _current(self, session: Session, tenant_id: str, limit_type: LimitType, at: datetime) -> tuple[str, int]:
        rule = LIMIT_RULES[limit_type]
        period_key, _, _ = period_bounds(rule.granularity, at)
        if rule.granularity == Granularity.HOURLY:
            return period_key, read_window(hourly_window_key(tenant_id, rule.column, period_key))
        summary = self.ledger.get_summary_in_session(session, tenant_id, rule.granularity, period_key)
        if summary is None:
            return period_key, 0
        return period_key, int(getattr(summary, rule.column))

    def check_in_session(
        self,
        session: Session,
        tenant_id: str,
        limit_type: LimitType,
        at: datetime,
    ) -> QuotaCheckRead:
        plan, _ = self.plans.resolve_entitled_plan(session, tenant_id, at=at)
        period_key, current = self._current(session, tenant_id, limit_type, at)
        return build_verdict(limit_type, period_key, plan.slug, current, resolve_limit(plan, limit_type))

    def check(
        self,
        ctx: TenantContext,
        tenant_id: str,
        limit_type: LimitType,
        *,
        at: datetime | None = None,
    ) -> QuotaCheckRead:
        self.plans.ensure_default_plans()
        moment = ensure_utc(at or now_utc())
        with self._session() as session:
            TenantScopedRepository(session, ctx).ensure_tenant(tenant_id)
            return self.check_in_session(session, tenant_id, limit_type, moment)

    def _deny(self, ctx: TenantContext, tenant_id: str, verdict: QuotaCheckRead) -> QuotaExceededError:
        logger.info(
            "quota.denied",
            tenant_id=tenant_id,
            limit_type=str(verdict.limit_type),
            current=verdict.current,
            limit=verdict.limit,
        )
        write_audit_log_detached(
            tenant_id=tenant_id,
            actor_id=ctx.actor_id,
            action="usage.quota_exceeded",
            resource="usage_summary",
            detail={"verdict": verdict.model_dump(mode="json")},
        )
        return QuotaExceededError(verdict)

    def gate(
        self,
        ctx: TenantContext,
        tenant_id: str,
        limit_type: LimitType,
        event_type: UsageEventType,
        *,
        resource_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[UsageEvent, QuotaCheckRead]:
        """Admit one metered action and record it, or raise `QuotaExceededError`."""
        rule = LIMIT_RULES[limit_type]
        if rule.event_type != event_type:
            raise ValidationError(f"limit {limit_type} does not meter {event_type} events")
        self.plans.ensure_default_plans()
        moment = now_utc()
        with self._session() as session:
            TenantScopedRepository(session, ctx).ensure_tenant(tenant_id)
            verdict = self.check_in_session(session, tenant_id, limit_type, moment)
            if verdict.exceeded:
                raise self._deny(ctx, tenant_id, verdict)

            detail = dict(metadata or {})
            pre_incremented: Granularity | None = None
            count_hourly = True
            if verdict.limit is not None and rule.granularity == Granularity.HOURLY:
                window = hourly_window_key(tenant_id, rule.column, verdict.period_key)
                if incr_window(window, HOURLY_WINDOW_TTL_SECONDS) > verdict.limit:
                    decr_window(window)
                    session.rollback()
                    raise self._deny(ctx, tenant_id, self.check_in_session(session, tenant_id, limit_type, moment))
                count_hourly = False
            elif verdict.limit is not None and event_quantity(event_type, detail) > 0:
                quantity = event_quantity(event_type, detail)
                admitted = self.ledger.gated_increment(
                    session,
                    tenant_id,
                    rule.granularity,
                    moment,
                    rule.column,
                    quantity,
                    verdict.limit,
                )
                if not admitted:
                    session.rollback()
                    raise self._deny(ctx, tenant_id, self.check_in_session(session, tenant_id, limit_type, moment))
                pre_incremented = rule.granularity

            event = self.ledger.record_in_session(
                session,
                tenant_id,
                event_type,
                resource_ref=resource_ref,
                metadata=detail,
                occurred_at=moment,
                actor_id=ctx.actor_id,
                pre_incremented=pre_incremented,
                count_hourly=count_hourly,
            )
            session.commit()
            session.refresh(event)
            after = self.check_in_session(session, tenant_id, limit_type, moment)
        return event, after

    def get_usage_overview(self, ctx: TenantContext, tenant_id: str) -> UsageOverviewRead:
        self.plans.ensure_default_plans()
        moment = now_utc()
        with self._session() as session:
            TenantScopedRepository(session, ctx).ensure_tenant(tenant_id)
            plan, _ = self.plans.resolve_entitled_plan(session, tenant_id, at=moment)
            verdicts = [self.check_in_session(session, tenant_id, item, moment) for item in LimitType]
            month_key, _, _ = period_bounds(Granularity.MONTHLY, moment)
            summary = self.ledger.get_summary_in_session(session, tenant_id, Granularity.MONTHLY, month_key)
            return UsageOverviewRead(
                tenant_id=tenant_id,
                plan_slug=plan.slug,
                limits=verdicts,
                current_month=UsageSummaryRead.model_validate(summary) if summary is not None else None,
            )
