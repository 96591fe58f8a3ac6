from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import sqlalchemy as sa
from sqlmodel import Session, col, select

from saas_control.domain.errors import ValidationError
from saas_control.domain.models import (
    Granularity,
    UsageEvent,
    UsageEventType,
    UsageSummary,
    ensure_utc,
    now_utc,
)
from saas_control.infra.db import dialect_insert, get_engine
from saas_control.infra.logging import get_logger
from saas_control.infra.redis_state import hourly_window_key, incr_window
from saas_control.infra.repository import TenantScopedRepository
from saas_control.infra.tenant import TenantContext

USAGE_EVENT_RETENTION_DAYS = int(os.getenv("USAGE_EVENT_RETENTION_DAYS", "90"))
HOURLY_WINDOW_TTL_SECONDS = 2 * 3600

COUNTER_COLUMNS: dict[UsageEventType, str] = {
    UsageEventType.UPLOAD: "uploads",
    UsageEventType.ANALYSIS: "analyses",
    UsageEventType.API_CALL: "api_calls",
    UsageEventType.STORAGE_DELTA: "storage_bytes",
}

SUMMARY_GRANULARITIES = (Granularity.DAILY, Granularity.MONTHLY)

logger = get_logger(__name__)


def period_bounds(granularity: Granularity, at: datetime) -> tuple[str, datetime, datetime]:
    """Return `(period_key, start, end)` of the period containing `at`, end exclusive."""
    moment = ensure_utc(at)
    if granularity == Granularity.HOURLY:
        start = moment.replace(minute=0, second=0, microsecond=0)
        return start.strftime("%Y-%m-%dT%H"), start, start + timedelta(hours=1)
    if granularity == Granularity.DAILY:
        start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        return start.strftime("%Y-%m-%d"), start, start + timedelta(days=1)
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start.strftime("%Y-%m"), start, end


def parse_period_key(granularity: Granularity, period_key: str) -> tuple[datetime, datetime]:
    formats = {Granularity.DAILY: "%Y-%m-%d", Granularity.MONTHLY: "%Y-%m"}
    fmt = formats.get(granularity)
    if fmt is None:
        raise ValidationError(f"summaries are not kept for granularity {granularity}")
    try:
        parsed = datetime.strptime(period_key, fmt).replace(tzinfo=UTC)
    except ValueError as exc:
        raise ValidationError(f"invalid period key for {granularity}: {period_key}") from exc
    _, start, end = period_bounds(granularity, parsed)
    return start, end


def event_quantity(event_type: UsageEventType, metadata: dict[str, Any]) -> int:
    if event_type != UsageEventType.STORAGE_DELTA:
        return 1
    raw = metadata.get("bytes")
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValidationError("storage_delta events require integer metadata.bytes")
    return raw


class UsageLedgerService:
    """Append-only usage events plus daily and monthly counter rows.

    Each recorded event bumps both the daily and the monthly summary of its
    timestamp with an INSERT ... ON CONFLICT DO UPDATE, so concurrent writers
    never lose increments. Counters only grow; `recompute_summary` is the
    single path that can lower them.
    """

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _summary_values(
        self,
        tenant_id: str,
        granularity: Granularity,
        at: datetime,
        counts: dict[str, int] | None = None,
    ) -> dict[str, Any]:
        period_key, start, _ = period_bounds(granularity, at)
        now = now_utc()
        values: dict[str, Any] = {
            "id": str(uuid4()),
            "tenant_id": tenant_id,
            "granularity": str(granularity),
            "period_key": period_key,
            "period_start": start,
            "uploads": 0,
            "analyses": 0,
            "api_calls": 0,
            "storage_bytes": 0,
            "created_at": now,
            "updated_at": now,
        }
        values.update(counts or {})
        return values

    def _increment(
        self,
        session: Session,
        tenant_id: str,
        granularity: Granularity,
        at: datetime,
        column: str,
        quantity: int,
    ) -> None:
        table = UsageSummary.__table__
        statement = dialect_insert(session, table).values(
            **self._summary_values(tenant_id, granularity, at, {column: quantity})
        )
        statement = statement.on_conflict_do_update(
            index_elements=["tenant_id", "granularity", "period_key"],
            set_={
                column: table.c[column] + statement.excluded[column],
                "updated_at": statement.excluded.updated_at,
            },
        )
        session.execute(statement)

    def gated_increment(
        self,
        session: Session,
        tenant_id: str,
        granularity: Granularity,
        at: datetime,
        column: str,
        quantity: int,
        limit: int,
    ) -> bool:
        """Increment only while the counter stays within `limit`; False when it would not."""
        table = UsageSummary.__table__
        seed = dialect_insert(session, table).values(**self._summary_values(tenant_id, granularity, at))
        session.execute(seed.on_conflict_do_nothing(index_elements=["tenant_id", "granularity", "period_key"]))

        period_key, _, _ = period_bounds(granularity, at)
        statement = (
            sa.update(table)
            .where(table.c.tenant_id == tenant_id)
            .where(table.c.granularity == str(granularity))
            .where(table.c.period_key == period_key)
            .where(table.c[column] + quantity <= limit)
            .values({column: table.c[column] + quantity, "updated_at": now_utc()})
        )
        result = session.execute(statement)
        return result.rowcount == 1

    def record_in_session(
        self,
        session: Session,
        tenant_id: str,
        event_type: UsageEventType,
        *,
        resource_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
        actor_id: str | None = None,
        pre_incremented: Granularity | None = None,
        count_hourly: bool = True,
    ) -> UsageEvent:
        """Append one event and bump its counters inside the caller's transaction.

        `pre_incremented` names a summary granularity the caller already moved
        through `gated_increment`; that row is not bumped a second time.
        """
        detail = dict(metadata or {})
        quantity = event_quantity(event_type, detail)
        at = ensure_utc(occurred_at or now_utc())
        column = COUNTER_COLUMNS[event_type]
        for granularity in SUMMARY_GRANULARITIES:
            if granularity == pre_incremented:
                continue
            self._increment(session, tenant_id, granularity, at, column, quantity)

        event = UsageEvent(
            tenant_id=tenant_id,
            event_type=event_type,
            resource_ref=resource_ref,
            quantity=quantity,
            detail=detail,
            occurred_at=at,
            created_by=actor_id,
        )
        session.add(event)
        if event_type == UsageEventType.API_CALL and count_hourly:
            window_key, _, _ = period_bounds(Granularity.HOURLY, at)
            incr_window(hourly_window_key(tenant_id, "api_calls", window_key), HOURLY_WINDOW_TTL_SECONDS)
        return event

    def record(
        self,
        ctx: TenantContext,
        tenant_id: str,
        event_type: UsageEventType,
        *,
        resource_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> UsageEvent:
        with self._session() as session:
            TenantScopedRepository(session, ctx).ensure_tenant(tenant_id)
            event = self.record_in_session(
                session,
                tenant_id,
                event_type,
                resource_ref=resource_ref,
                metadata=metadata,
                occurred_at=occurred_at,
                actor_id=ctx.actor_id,
            )
            session.commit()
            session.refresh(event)
        logger.debug("usage.recorded", tenant_id=tenant_id, event_type=str(event_type), quantity=event.quantity)
        return event

    def get_summary_in_session(
        self,
        session: Session,
        tenant_id: str,
        granularity: Granularity,
        period_key: str,
    ) -> UsageSummary | None:
        statement = (
            select(UsageSummary)
            .where(UsageSummary.tenant_id == tenant_id)
            .where(UsageSummary.granularity == str(granularity))
            .where(UsageSummary.period_key == period_key)
        )
        return session.exec(statement).first()

    def list_summaries(
        self,
        ctx: TenantContext,
        tenant_id: str,
        *,
        granularity: Granularity = Granularity.MONTHLY,
        limit: int = 12,
    ) -> list[UsageSummary]:
        with self._session() as session:
            repo = TenantScopedRepository(session, ctx)
            repo.ensure_tenant(tenant_id)
            rows = repo.list(
                repo.select(UsageSummary)
                .where(UsageSummary.tenant_id == tenant_id)
                .where(UsageSummary.granularity == str(granularity))
            )
        rows.sort(key=lambda item: item.period_key, reverse=True)
        return rows[:limit]

    def list_events(
        self,
        ctx: TenantContext,
        tenant_id: str,
        *,
        event_type: UsageEventType | None = None,
        limit: int = 100,
    ) -> list[UsageEvent]:
        with self._session() as session:
            repo = TenantScopedRepository(session, ctx)
            repo.ensure_tenant(tenant_id)
            statement = repo.select(UsageEvent).where(UsageEvent.tenant_id == tenant_id)
            if event_type is not None:
                statement = statement.where(UsageEvent.event_type == str(event_type))
            rows = repo.list(statement)
        rows.sort(key=lambda item: ensure_utc(item.occurred_at), reverse=True)
        return rows[:limit]

    def recompute_summary(
        self,
        ctx: TenantContext,
        tenant_id: str,
        granularity: Granularity,
        period_key: str,
    ) -> UsageSummary:
        """Rebuild one summary row from the events still inside its period."""
        start, end = parse_period_key(granularity, period_key)
        with self._session() as session:
            repo = TenantScopedRepository(session, ctx)
            repo.ensure_tenant(tenant_id)
            events = repo.list(
                repo.select(UsageEvent)
                .where(UsageEvent.tenant_id == tenant_id)
                .where(col(UsageEvent.occurred_at) >= start)
                .where(col(UsageEvent.occurred_at) < end)
            )
            counts = {column: 0 for column in COUNTER_COLUMNS.values()}
            for event in events:
                counts[COUNTER_COLUMNS[UsageEventType(event.event_type)]] += event.quantity

            summary = self.get_summary_in_session(session, tenant_id, granularity, period_key)
            if summary is None:
                summary = UsageSummary(**self._summary_values(tenant_id, granularity, start, counts))
                repo.insert(
                    summary,
                    action="usage.summary_recomputed",
                    resource="usage_summary",
                    detail={"events": len(events)},
                )
            else:
                repo.update(
                    summary,
                    counts,
                    action="usage.summary_recomputed",
                    resource="usage_summary",
                    detail={"events": len(events)},
                )
            session.commit()
            session.refresh(summary)
        logger.info(
            "usage.summary_recomputed",
            tenant_id=tenant_id,
            granularity=str(granularity),
            period_key=period_key,
            events=len(events),
        )
        return summary

    def sweep_retention(self, *, now: datetime | None = None, retention_days: int | None = None) -> int:
        """Delete events older than the retention horizon; summaries are kept."""
        days = USAGE_EVENT_RETENTION_DAYS if retention_days is None else retention_days
        horizon = ensure_utc(now or now_utc()) - timedelta(days=days)
        with self._session() as session:
            result = session.execute(sa.delete(UsageEvent).where(col(UsageEvent.occurred_at) < horizon))
            session.commit()
        deleted = int(result.rowcount or 0)
        logger.info("usage.retention_swept", deleted=deleted, horizon=horizon.isoformat())
        return deleted
