from __future__ import annotations

import os
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from saas_control.domain.errors import ConflictError, NotFoundError, ValidationError
from saas_control.domain.models import PlanDefinition, PlanRead, PlanUpsert, Subscription, Tenant, ensure_utc, now_utc
from saas_control.domain.plan_seeds import DEFAULT_PLANS, POPULAR_PLAN_SLUG, UNBOUNDED
from saas_control.domain.state_machine import ENTITLED_SUBSCRIPTION_STATUSES
from saas_control.infra.db import get_engine
from saas_control.infra.logging import get_logger
from saas_control.infra.repository import TenantScopedRepository
from saas_control.infra.tenant import TenantContext

FREE_PLAN_SLUG = os.getenv("FREE_PLAN_SLUG", "free")

logger = get_logger(__name__)


def is_unbounded(limit: int | None) -> bool:
    return limit is None or limit == UNBOUNDED


def yearly_discount_percent(plan: PlanDefinition) -> int:
    if not plan.price_monthly or plan.price_yearly is None:
        return 0
    full_year = plan.price_monthly * 12
    return round((1 - plan.price_yearly / full_year) * 100)


def to_plan_read(plan: PlanDefinition) -> PlanRead:
    read = PlanRead.model_validate(plan)
    read.yearly_discount_percent = yearly_discount_percent(plan)
    read.is_popular = plan.slug == POPULAR_PLAN_SLUG
    return read


def is_entitled(subscription: Subscription, at: datetime) -> bool:
    """A subscription grants its plan while trialing or active and not past its period end."""
    if subscription.status not in ENTITLED_SUBSCRIPTION_STATUSES:
        return False
    if subscription.current_period_end is None:
        return True
    return ensure_utc(subscription.current_period_end) > ensure_utc(at)


class PlanCatalogService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def ensure_default_plans(self) -> list[PlanDefinition]:
        with self._session() as session:
            existing = {plan.slug for plan in session.exec(select(PlanDefinition)).all()}
            created: list[PlanDefinition] = []
            for seed in DEFAULT_PLANS:
                if seed["slug"] in existing:
                    continue
                plan = PlanDefinition(**seed)
                session.add(plan)
                created.append(plan)
            if created:
                try:
                    session.commit()
                except IntegrityError:
                    # Another worker seeded concurrently.
                    session.rollback()
                    return []
                logger.info("plans.seeded", slugs=[plan.slug for plan in created])
            return created

    def list_plans(self, *, include_inactive: bool = False) -> list[PlanRead]:
        self.ensure_default_plans()
        with self._session() as session:
            statement = select(PlanDefinition)
            if not include_inactive:
                statement = statement.where(col(PlanDefinition.is_active).is_(True))
            rows = list(session.exec(statement).all())
        rows.sort(key=lambda item: (item.sort_order, item.slug))
        return [to_plan_read(item) for item in rows]

    def get_plan(self, slug: str) -> PlanDefinition:
        self.ensure_default_plans()
        with self._session() as session:
            return self.get_plan_in_session(session, slug)

    def get_plan_in_session(self, session: Session, slug: str) -> PlanDefinition:
        plan = session.exec(select(PlanDefinition).where(PlanDefinition.slug == slug)).first()
        if plan is None:
            raise ValidationError(f"unknown plan: {slug}")
        return plan

    def upsert_plan(self, ctx: TenantContext, payload: PlanUpsert) -> PlanDefinition:
        if not ctx.is_system:
            raise NotFoundError("plan not found")
        with self._session() as session:
            repo = TenantScopedRepository(session, ctx)
            plan = session.exec(select(PlanDefinition).where(PlanDefinition.slug == payload.slug)).first()
            values = payload.model_dump()
            if plan is None:
                plan = PlanDefinition(**values)
                repo.insert(plan, action="plan.created", resource="plan")
            else:
                repo.update(plan, values, action="plan.updated", resource="plan")
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("plan slug conflict") from exc
            session.refresh(plan)
            logger.info("plan.upserted", slug=plan.slug, actor_id=ctx.actor_id)
            return plan

    def resolve_entitled_plan(
        self,
        session: Session,
        tenant_id: str,
        *,
        at: datetime | None = None,
    ) -> tuple[PlanDefinition, Subscription | None]:
        """Plan that governs a tenant right now, falling back to the free tier."""
        moment = at or now_utc()
        tenant = session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")
        subscription: Subscription | None = None
        if tenant.active_subscription_id is not None:
            subscription = session.get(Subscription, tenant.active_subscription_id)
        if subscription is not None and is_entitled(subscription, moment):
            plan = session.exec(
                select(PlanDefinition).where(PlanDefinition.slug == subscription.plan_slug)
            ).first()
            if plan is not None:
                return plan, subscription
        return self.get_plan_in_session(session, FREE_PLAN_SLUG), None

    def get_features_for_tenant(self, ctx: TenantContext, tenant_id: str) -> tuple[str, dict[str, Any]]:
        self.ensure_default_plans()
        with self._session() as session:
            TenantScopedRepository(session, ctx).ensure_tenant(tenant_id)
            plan, _ = self.resolve_entitled_plan(session, tenant_id)
            return plan.slug, dict(plan.features)

    def can_access_feature(self, ctx: TenantContext, tenant_id: str, feature: str) -> bool:
        _, features = self.get_features_for_tenant(ctx, tenant_id)
        return features.get(feature) is True
