from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, BigInteger, Column, Index, String, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from saas_control.domain.state_machine import SubscriptionStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class TenantStatus(StrEnum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class BillingCycle(StrEnum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class UsageEventType(StrEnum):
    UPLOAD = "upload"
    ANALYSIS = "analysis"
    API_CALL = "api_call"
    STORAGE_DELTA = "storage_delta"


class Granularity(StrEnum):
    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"


class LimitType(StrEnum):
    UPLOADS = "uploads"
    ANALYSES = "analyses"
    API_CALLS = "api_calls"
    STORAGE = "storage"
    API_CALLS_DAILY = "api_calls_daily"
    API_CALLS_HOURLY = "api_calls_hourly"


class BillingEventType(StrEnum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    TRIAL_WILL_END = "subscription.trial_will_end"
    PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    tenant_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_tenant_ts", "tenant_id", "ts"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str | None = Field(default=None, index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str = Field(index=True)
    resource: str
    resource_id: str | None = Field(default=None, index=True)
    before: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    after: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    ts: datetime = Field(default_factory=now_utc, index=True)


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    email: str | None = Field(default=None, index=True)
    status: str = Field(
        default=TenantStatus.ACTIVE,
        sa_column=Column(String(20), nullable=False, index=True),
    )
    active_subscription_id: str | None = Field(default=None, index=True)
    anonymized_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    username: str = Field(index=True)
    password_hash: str
    permissions: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class PlanDefinition(SQLModel, table=True):
    __tablename__ = "plan_definitions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    slug: str = Field(index=True, unique=True)
    name: str
    description: str | None = None
    price_monthly: int | None = None
    price_yearly: int | None = None
    features: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    limits: dict[str, int] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    is_active: bool = Field(default=True, index=True)
    sort_order: int = Field(default=0)
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "id", name="uq_subscriptions_tenant_id_id"),
        Index(
            "uq_subscriptions_one_active_per_tenant",
            "tenant_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_subscriptions_tenant_status", "tenant_id", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    plan_slug: str = Field(foreign_key="plan_definitions.slug", index=True)
    external_subscription_id: str | None = Field(default=None, unique=True, index=True)
    external_customer_id: str | None = Field(default=None, index=True)
    status: str = Field(
        default=SubscriptionStatus.ACTIVE,
        sa_column=Column(String(20), nullable=False, index=True),
    )
    billing_cycle: str = Field(
        default=BillingCycle.MONTHLY,
        sa_column=Column(String(20), nullable=False),
    )
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = Field(default=None, index=True)
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    pending_plan_slug: str | None = None
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class UsageEvent(SQLModel, table=True):
    __tablename__ = "usage_events"
    __table_args__ = (
        Index("ix_usage_events_tenant_occurred", "tenant_id", "occurred_at"),
        Index("ix_usage_events_tenant_type_occurred", "tenant_id", "event_type", "occurred_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    event_type: str = Field(sa_column=Column(String(40), nullable=False))
    resource_ref: str | None = None
    quantity: int = Field(default=1, sa_column=Column(BigInteger, nullable=False))
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    occurred_at: datetime = Field(default_factory=now_utc, index=True)
    created_by: str | None = None


class UsageSummary(SQLModel, table=True):
    __tablename__ = "usage_summaries"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "granularity",
            "period_key",
            name="uq_usage_summaries_tenant_period",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    granularity: str = Field(sa_column=Column(String(20), nullable=False))
    period_key: str = Field(index=True)
    period_start: datetime = Field(index=True)
    uploads: int = Field(default=0)
    analyses: int = Field(default=0)
    api_calls: int = Field(default=0)
    storage_bytes: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, server_default="0"))
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


class BillingEvent(SQLModel, table=True):
    __tablename__ = "billing_events"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    external_event_id: str = Field(index=True, unique=True)
    event_type: str = Field(index=True)
    processed: bool = Field(default=False, index=True)
    failed_terminal: bool = Field(default=False, index=True)
    processing_error: str | None = None
    attempts: int = Field(default=0)
    claimed_by: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = None
    tenant_id: str | None = Field(default=None, index=True)
    subscription_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    received_at: datetime = Field(default_factory=now_utc, index=True)
    processed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    tenant_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class TenantCreate(BaseModel):
    name: str
    email: str | None = None


class TenantUpdate(BaseModel):
    name: str | None = None
    email: str | None = None


class TenantRead(ORMReadModel):
    id: str
    name: str
    email: str | None = None
    status: str
    active_subscription_id: str | None = None
    created_at: datetime
    updated_at: datetime


class UserRead(ORMReadModel):
    id: str
    tenant_id: str
    username: str
    is_active: bool
    permissions: list[str]
    created_at: datetime


class DevLoginRequest(BaseModel):
    tenant_id: str
    username: str
    password: str


class BootstrapAdminRequest(BaseModel):
    tenant_id: str
    username: str
    password: str


class SystemLoginRequest(BaseModel):
    operator: str
    api_key: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    permissions: list[str]


class PlanUpsert(BaseModel):
    slug: str
    name: str
    description: str | None = None
    price_monthly: int | None = PydanticField(default=None, ge=0)
    price_yearly: int | None = PydanticField(default=None, ge=0)
    features: dict[str, Any] = PydanticField(default_factory=dict)
    limits: dict[str, int] = PydanticField(default_factory=dict)
    is_active: bool = True
    sort_order: int = 0


class PlanRead(ORMReadModel):
    id: str
    slug: str
    name: str
    description: str | None = None
    price_monthly: int | None = None
    price_yearly: int | None = None
    features: dict[str, Any]
    limits: dict[str, int]
    is_active: bool
    sort_order: int
    yearly_discount_percent: int = 0
    is_popular: bool = False


class TenantFeaturesRead(BaseModel):
    tenant_id: str
    plan_slug: str
    features: dict[str, Any]


class FeatureAccessRead(BaseModel):
    tenant_id: str
    feature: str
    allowed: bool


class UsageRecordRequest(BaseModel):
    event_type: UsageEventType
    resource_ref: str | None = None
    metadata: dict[str, Any] = PydanticField(default_factory=dict)


class UsageGateRequest(UsageRecordRequest):
    limit_type: LimitType


class UsageEventRead(ORMReadModel):
    id: str
    tenant_id: str
    event_type: str
    resource_ref: str | None = None
    quantity: int
    detail: dict[str, Any]
    occurred_at: datetime


class UsageSummaryRead(ORMReadModel):
    tenant_id: str
    granularity: str
    period_key: str
    period_start: datetime
    uploads: int
    analyses: int
    api_calls: int
    storage_bytes: int
    updated_at: datetime


class RecomputeSummaryRequest(BaseModel):
    granularity: Granularity = Granularity.MONTHLY
    period_key: str


class QuotaCheckRead(BaseModel):
    limit_type: LimitType
    period_key: str
    plan_slug: str
    current: int
    limit: int | None
    remaining: int | None
    exceeded: bool


class UsageOverviewRead(BaseModel):
    tenant_id: str
    plan_slug: str
    limits: list[QuotaCheckRead]
    current_month: UsageSummaryRead | None = None


class SubscriptionRead(ORMReadModel):
    id: str
    tenant_id: str
    plan_slug: str
    external_subscription_id: str | None = None
    external_customer_id: str | None = None
    status: str
    billing_cycle: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    pending_plan_slug: str | None = None
    created_at: datetime
    updated_at: datetime


class BillingInfoRead(BaseModel):
    tenant_id: str
    plan_slug: str
    status: str
    billing_cycle: str
    next_billing_date: datetime | None = None
    days_until_billing: int | None = None
    monthly_price: int | None = None
    yearly_price: int | None = None
    currency: str = "usd"


class SubscriptionCancelRequest(BaseModel):
    reason: str | None = None
    at_period_end: bool = False


class PlanChangeRequest(BaseModel):
    new_plan_slug: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


class ProrationRead(BaseModel):
    price_difference: int
    prorated_amount: int
    days_remaining: int
    cycle_length_days: int
    is_upgrade: bool
    is_downgrade: bool
    immediate_charge: int


class PlanChangePreviewRead(BaseModel):
    tenant_id: str
    current_plan_slug: str
    new_plan_slug: str
    billing_cycle: BillingCycle
    current_price: int
    new_price: int
    proration: ProrationRead


class PlanChangeCommitRead(BaseModel):
    preview: PlanChangePreviewRead
    subscription: SubscriptionRead
    applied: bool


class BillingWebhookData(BaseModel):
    tenant_id: str | None = None
    subscription_id: str | None = None
    customer_id: str | None = None
    plan_slug: str | None = None
    status: SubscriptionStatus | None = None
    billing_cycle: BillingCycle | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at: datetime | None = None


class BillingWebhookPayload(BaseModel):
    id: str
    type: str
    data: BillingWebhookData = PydanticField(default_factory=BillingWebhookData)


class BillingIngestRead(BaseModel):
    external_event_id: str
    already_processed: bool
    processed: bool
    failed_terminal: bool = False


class BillingEventRead(ORMReadModel):
    id: str
    external_event_id: str
    event_type: str
    processed: bool
    failed_terminal: bool
    processing_error: str | None = None
    attempts: int
    tenant_id: str | None = None
    subscription_id: str | None = None
    received_at: datetime
    processed_at: datetime | None = None


class AuditLogRead(ORMReadModel):
    id: str
    tenant_id: str | None = None
    actor_id: str | None = None
    action: str
    resource: str
    resource_id: str | None = None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    detail: dict[str, Any]
    ts: datetime


class TenantExportRead(BaseModel):
    tenant: TenantRead
    subscriptions: list[SubscriptionRead]
    usage_summaries: list[UsageSummaryRead]
    audit_logs: list[AuditLogRead]
    exported_at: datetime


class SweepResultRead(BaseModel):
    sweep: str
    affected: int
    ran_at: datetime


class PlanAnalyticsRead(BaseModel):
    plan_slug: str
    plan_name: str
    total_subscribers: int
    active_subscribers: int
    new_subscribers: int
    churned_subscribers: int
    monthly_revenue: int
    churn_rate: float


class SubscriptionAnalyticsRead(BaseModel):
    start_at: datetime
    end_at: datetime
    total_revenue: int
    total_active_subscribers: int
    total_free_tenants: int
    plans: list[PlanAnalyticsRead]


class UsagePeriodAnalyticsRead(BaseModel):
    period_key: str
    tenants: int
    uploads: int
    analyses: int
    api_calls: int
    storage_bytes: int


class UsageAnalyticsRead(BaseModel):
    start_at: datetime
    end_at: datetime
    periods: list[UsagePeriodAnalyticsRead]
