from __future__ import annotations

import hashlib
import hmac
import os
import time
from datetime import timedelta
from typing import Any
from uuid import uuid4

import pydantic
import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from saas_control.domain.errors import (
    ControlPlaneError,
    InvariantViolation,
    NotFoundError,
    SignatureError,
    TransientExternalError,
    ValidationError,
)
from saas_control.domain.models import (
    BillingEvent,
    BillingEventType,
    BillingIngestRead,
    BillingWebhookData,
    BillingWebhookPayload,
    Subscription,
    now_utc,
)
from saas_control.domain.state_machine import SubscriptionStatus
from saas_control.infra.audit import write_audit_log_detached
from saas_control.infra.db import get_engine
from saas_control.infra.events import event_bus
from saas_control.infra.logging import get_logger
from saas_control.infra.repository import TenantScopedRepository
from saas_control.infra.tenant import SYSTEM_CONTEXT
from saas_control.services.subscription_service import SubscriptionLifecycleService

BILLING_WEBHOOK_SECRET = os.getenv("BILLING_WEBHOOK_SECRET", "")
BILLING_WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("BILLING_WEBHOOK_TOLERANCE_SECONDS", "300"))
BILLING_MAX_ATTEMPTS = int(os.getenv("BILLING_MAX_ATTEMPTS", "5"))
BILLING_RETRY_BASE_SECONDS = float(os.getenv("BILLING_RETRY_BASE_SECONDS", "0.5"))
BILLING_RETRY_MAX_SECONDS = float(os.getenv("BILLING_RETRY_MAX_SECONDS", "8"))
BILLING_CLAIM_LEASE_SECONDS = int(os.getenv("BILLING_CLAIM_LEASE_SECONDS", "120"))

SIGNATURE_HEADER = "X-Billing-Signature"
RETRYABLE_ERRORS = (TransientExternalError, InvariantViolation)

logger = get_logger(__name__)


def sign_payload(raw_body: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode() + raw_body
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def verify_signature(
    raw_body: bytes,
    header: str | None,
    *,
    secret: str | None = None,
    tolerance_seconds: int | None = None,
    now: float | None = None,
) -> None:
    """Reject the delivery unless `header` carries a fresh HMAC-SHA256 over the raw body."""
    key = BILLING_WEBHOOK_SECRET if secret is None else secret
    tolerance = BILLING_WEBHOOK_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds
    if not key:
        raise SignatureError("webhook secret is not configured")
    if not header:
        raise SignatureError("missing signature header")

    timestamp: int | None = None
    candidates: list[str] = []
    for part in header.split(","):
        name, _, value = part.strip().partition("=")
        if name == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise SignatureError("malformed signature timestamp") from exc
        elif name == "v1" and value:
            candidates.append(value)
    if timestamp is None or not candidates:
        raise SignatureError("malformed signature header")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        raise SignatureError("signature timestamp outside tolerance")

    expected = sign_payload(raw_body, key, timestamp).split("v1=", 1)[1]
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise SignatureError("signature mismatch")


def parse_payload(raw_body: bytes) -> BillingWebhookPayload:
    try:
        return BillingWebhookPayload.model_validate_json(raw_body)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"malformed billing payload: {exc.error_count()} error(s)") from exc


class BillingEventService:
    """Idempotent ingestion of payment-processor notifications.

    The unique `external_event_id` decides whether a delivery is new. Whoever
    inserts the row, or later takes over an expired lease on an unprocessed
    row, holds a claim token in `claimed_by`; every write that moves the row
    forward is conditional on that token, so a concurrent duplicate delivery
    never dispatches the same event a second time.
    """

    def __init__(self, lifecycle: SubscriptionLifecycleService | None = None) -> None:
        self.lifecycle = lifecycle or SubscriptionLifecycleService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def ingest_signed(self, raw_body: bytes, signature_header: str | None) -> BillingIngestRead:
        try:
            verify_signature(raw_body, signature_header)
        except SignatureError:
            logger.warning("billing.signature_rejected", body_bytes=len(raw_body))
            raise
        return self.ingest(parse_payload(raw_body))

    def ingest(self, payload: BillingWebhookPayload) -> BillingIngestRead:
        event_id, token = self._claim_new_or_pending(payload)
        if token is None:
            return self._already_handled(event_id)
        return self._process(event_id, token)

    def _already_handled(self, event_id: str) -> BillingIngestRead:
        row = self.get_event(event_id)
        logger.info(
            "billing.event_duplicate",
            external_event_id=row.external_event_id,
            processed=row.processed,
            in_flight=not (row.processed or row.failed_terminal),
        )
        return BillingIngestRead(
            external_event_id=row.external_event_id,
            already_processed=True,
            processed=row.processed,
            failed_terminal=row.failed_terminal,
        )

    def _claim_new_or_pending(self, payload: BillingWebhookPayload) -> tuple[str, str | None]:
        token = uuid4().hex
        with self._session() as session:
            row = BillingEvent(
                external_event_id=payload.id,
                event_type=payload.type,
                payload=payload.model_dump(mode="json"),
                tenant_id=payload.data.tenant_id,
                attempts=1,
                claimed_by=token,
                claimed_at=now_utc(),
            )
            session.add(row)
            try:
                session.commit()
                return row.id, token
            except IntegrityError:
                session.rollback()

            existing = session.exec(
                select(BillingEvent).where(BillingEvent.external_event_id == payload.id)
            ).first()
            if existing is None:
                raise InvariantViolation(f"billing event {payload.id} vanished after conflict")
            if existing.processed or existing.failed_terminal:
                return existing.id, None
            if self._take_lease(session, existing.id, token):
                return existing.id, token
            return existing.id, None

    def _open_row(self, event_id: str) -> sa.Update:
        return (
            sa.update(BillingEvent)
            .where(col(BillingEvent.id) == event_id)
            .where(col(BillingEvent.processed).is_(False))
            .where(col(BillingEvent.failed_terminal).is_(False))
            .execution_options(synchronize_session=False)
        )

    def _take_lease(self, session: Session, event_id: str, token: str) -> bool:
        """Claim an unprocessed row nobody holds, or whose holder let the lease expire."""
        now = now_utc()
        expired_before = now - timedelta(seconds=BILLING_CLAIM_LEASE_SECONDS)
        statement = (
            self._open_row(event_id)
            .where(
                sa.or_(
                    col(BillingEvent.claimed_by).is_(None),
                    col(BillingEvent.claimed_at) < expired_before,
                )
            )
            .values(
                claimed_by=token,
                claimed_at=now,
                attempts=col(BillingEvent.attempts) + 1,
                updated_at=now,
            )
        )
        result = session.execute(statement)
        session.commit()
        return result.rowcount == 1

    def _renew_lease(self, event_id: str, token: str) -> bool:
        now = now_utc()
        with self._session() as session:
            statement = (
                self._open_row(event_id)
                .where(col(BillingEvent.claimed_by) == token)
                .values(claimed_at=now, attempts=col(BillingEvent.attempts) + 1, updated_at=now)
            )
            result = session.execute(statement)
            session.commit()
        return result.rowcount == 1

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        logger.warning(
            "billing.event_retry",
            attempt=retry_state.attempt_number,
            error=str(outcome.exception()) if outcome is not None else None,
        )

    def _lease_lost(self, event_id: str) -> BillingIngestRead:
        logger.warning("billing.event_lease_lost", billing_event_id=event_id)
        return self._already_handled(event_id)

    def _process(self, event_id: str, token: str) -> BillingIngestRead:
        with self._session() as session:
            row = session.get(BillingEvent, event_id)
            if row is None:
                raise NotFoundError("billing event not found")
            budget = max(1, BILLING_MAX_ATTEMPTS - row.attempts + 1)
            external_event_id = row.external_event_id

        retrying = Retrying(
            stop=stop_after_attempt(budget),
            wait=wait_exponential(multiplier=BILLING_RETRY_BASE_SECONDS, max=BILLING_RETRY_MAX_SECONDS),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1 and not self._renew_lease(event_id, token):
                        return self._lease_lost(event_id)
                    if not self._process_once(event_id, token):
                        return self._lease_lost(event_id)
        except RETRYABLE_ERRORS as exc:
            return self._park(event_id, token, external_event_id, f"retries exhausted: {exc}")
        except ControlPlaneError as exc:
            return self._park(event_id, token, external_event_id, str(exc))
        return BillingIngestRead(external_event_id=external_event_id, already_processed=False, processed=True)

    def _park(self, event_id: str, token: str, external_event_id: str, message: str) -> BillingIngestRead:
        if not self._mark_terminal(event_id, message, token=token):
            return self._lease_lost(event_id)
        return BillingIngestRead(
            external_event_id=external_event_id,
            already_processed=False,
            processed=False,
            failed_terminal=True,
        )

    def _process_once(self, event_id: str, token: str) -> bool:
        """Dispatch once under `token`; False when the claim is no longer ours."""
        with self._session() as session:
            row = session.get(BillingEvent, event_id)
            if row is None:
                raise NotFoundError("billing event not found")
            if row.processed or row.failed_terminal or row.claimed_by != token:
                return False
            payload = BillingWebhookPayload.model_validate(row.payload)
            try:
                subscription = self._dispatch(session, payload, row.id)
                now = now_utc()
                values: dict[str, Any] = {
                    "processed": True,
                    "processed_at": now,
                    "processing_error": None,
                    "updated_at": now,
                }
                if subscription is not None:
                    values["subscription_id"] = subscription.id
                    values["tenant_id"] = subscription.tenant_id
                statement = self._open_row(event_id).where(col(BillingEvent.claimed_by) == token).values(**values)
                if session.execute(statement).rowcount != 1:
                    session.rollback()
                    return False
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                self._record_error(event_id, token, str(exc.orig))
                raise InvariantViolation("billing event conflicted with a concurrent subscription write") from exc
            except OperationalError as exc:
                session.rollback()
                self._record_error(event_id, token, str(exc.orig))
                raise TransientExternalError("storage unavailable while processing billing event") from exc
            except RETRYABLE_ERRORS as exc:
                session.rollback()
                self._record_error(event_id, token, str(exc))
                raise
        logger.info("billing.event_processed", external_event_id=payload.id, event_type=payload.type)
        return True

    def _record_error(self, event_id: str, token: str, message: str) -> None:
        with self._session() as session:
            statement = (
                self._open_row(event_id)
                .where(col(BillingEvent.claimed_by) == token)
                .values(processing_error=message, updated_at=now_utc())
            )
            session.execute(statement)
            session.commit()

    def _mark_terminal(self, event_id: str, message: str, *, token: str) -> bool:
        """Park the event for operator review unless another worker already settled it."""
        with self._session() as session:
            statement = (
                self._open_row(event_id)
                .where(col(BillingEvent.claimed_by) == token)
                .values(
                    failed_terminal=True,
                    processing_error=message,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=now_utc(),
                )
            )
            if session.execute(statement).rowcount != 1:
                session.rollback()
                return False
            session.commit()
            row = session.get(BillingEvent, event_id)
            if row is None:
                raise NotFoundError("billing event not found")
            tenant_id = row.tenant_id
            external_event_id = row.external_event_id
            attempts = row.attempts
        logger.error(
            "billing.event_failed_terminal",
            external_event_id=external_event_id,
            attempts=attempts,
            error=message,
        )
        write_audit_log_detached(
            tenant_id=tenant_id,
            actor_id=SYSTEM_CONTEXT.actor_id,
            action="billing.event.failed_terminal",
            resource="billing_event",
            resource_id=event_id,
            detail={"external_event_id": external_event_id, "attempts": attempts, "error": message},
        )
        return True

    def _find_external(self, session: Session, data: BillingWebhookData) -> Subscription:
        if not data.subscription_id:
            raise ValidationError("payload is missing data.subscription_id")
        subscription = session.exec(
            select(Subscription).where(Subscription.external_subscription_id == data.subscription_id)
        ).first()
        if subscription is None:
            raise ValidationError(f"unknown external subscription: {data.subscription_id}")
        if data.tenant_id is not None and data.tenant_id != subscription.tenant_id:
            raise ValidationError("external subscription belongs to a different tenant")
        return subscription

    def _upsert(
        self,
        session: Session,
        data: BillingWebhookData,
        status: SubscriptionStatus,
        detail: dict[str, Any],
    ) -> Subscription:
        missing = [name for name in ("tenant_id", "subscription_id", "plan_slug") if getattr(data, name) is None]
        if missing:
            raise ValidationError(f"payload is missing data.{', data.'.join(missing)}")
        return self.lifecycle.upsert_from_external_event_in_session(
            session,
            tenant_id=str(data.tenant_id),
            external_subscription_id=str(data.subscription_id),
            plan_slug=str(data.plan_slug),
            status=status,
            period_start=data.current_period_start,
            period_end=data.current_period_end,
            trial_end=data.trial_end,
            cancel_at=data.cancel_at,
            customer_id=data.customer_id,
            billing_cycle=data.billing_cycle,
            detail=detail,
        )

    def _dispatch(self, session: Session, payload: BillingWebhookPayload, event_row_id: str) -> Subscription | None:
        data = payload.data
        detail = {"billing_event_id": event_row_id, "external_event_id": payload.id, "event_type": payload.type}
        repo = TenantScopedRepository(session, SYSTEM_CONTEXT)

        if payload.type in (BillingEventType.SUBSCRIPTION_CREATED, BillingEventType.SUBSCRIPTION_UPDATED):
            if data.status is None:
                raise ValidationError("payload is missing data.status")
            return self._upsert(session, data, data.status, detail)

        if payload.type == BillingEventType.SUBSCRIPTION_CANCELED:
            existing = session.exec(
                select(Subscription).where(Subscription.external_subscription_id == data.subscription_id)
            ).first()
            if existing is None:
                return self._upsert(session, data, SubscriptionStatus.CANCELED, detail)
            subscription = self._find_external(session, data)
            return self.lifecycle.transition_in_session(
                repo,
                subscription,
                SubscriptionStatus.CANCELED,
                action="subscription.canceled",
                detail={**detail, "reason": "billing_provider"},
            )

        if payload.type == BillingEventType.TRIAL_WILL_END:
            subscription = self._find_external(session, data)
            event_bus.publish_dict(
                "subscription.trial_will_end",
                subscription.tenant_id,
                {
                    "subscription_id": subscription.id,
                    "trial_end": (data.trial_end or subscription.trial_end or now_utc()).isoformat(),
                },
                actor_id=SYSTEM_CONTEXT.actor_id,
                correlation_id=payload.id,
                session=session,
            )
            return subscription

        if payload.type == BillingEventType.PAYMENT_FAILED:
            subscription = self._find_external(session, data)
            if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
                return subscription
            return self.lifecycle.transition_in_session(
                repo,
                subscription,
                SubscriptionStatus.PAST_DUE,
                action="subscription.past_due",
                detail={**detail, "reason": "payment_failed"},
            )

        if payload.type == BillingEventType.PAYMENT_SUCCEEDED:
            subscription = self._find_external(session, data)
            if subscription.status not in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID):
                return subscription
            changes: dict[str, Any] = {}
            if data.current_period_start is not None:
                changes["current_period_start"] = data.current_period_start
            if data.current_period_end is not None:
                changes["current_period_end"] = data.current_period_end
            return self.lifecycle.transition_in_session(
                repo,
                subscription,
                SubscriptionStatus.ACTIVE,
                action="subscription.active",
                changes=changes,
                detail={**detail, "reason": "payment_succeeded"},
            )

        logger.info("billing.event_type_ignored", external_event_id=payload.id, event_type=payload.type)
        return None

    def get_event(self, event_id: str) -> BillingEvent:
        with self._session() as session:
            row = session.get(BillingEvent, event_id)
            if row is None:
                raise NotFoundError("billing event not found")
            return row

    def list_review_queue(self) -> list[BillingEvent]:
        with self._session() as session:
            rows = list(
                session.exec(select(BillingEvent).where(col(BillingEvent.failed_terminal).is_(True))).all()
            )
        rows.sort(key=lambda item: item.received_at)
        return rows

    def retry_pending(self) -> int:
        """Reprocess unprocessed events whose claim is free or whose lease expired."""
        with self._session() as session:
            pending = list(
                session.exec(
                    select(BillingEvent)
                    .where(col(BillingEvent.processed).is_(False))
                    .where(col(BillingEvent.failed_terminal).is_(False))
                ).all()
            )
        processed = 0
        for row in sorted(pending, key=lambda item: item.received_at):
            token = uuid4().hex
            with self._session() as session:
                if not self._take_lease(session, row.id, token):
                    continue
            if row.attempts >= BILLING_MAX_ATTEMPTS:
                self._mark_terminal(row.id, "attempt budget exhausted", token=token)
                continue
            if self._process(row.id, token).processed:
                processed += 1
        logger.info("billing.retry_pending_swept", pending=len(pending), processed=processed)
        return processed

    def requeue(self, event_id: str) -> BillingIngestRead:
        token = uuid4().hex
        with self._session() as session:
            row = session.get(BillingEvent, event_id)
            if row is None:
                raise NotFoundError("billing event not found")
            if not row.failed_terminal:
                raise ValidationError("only failed-terminal billing events can be requeued")
            row.failed_terminal = False
            row.attempts = 1
            row.processing_error = None
            row.claimed_by = token
            row.claimed_at = now_utc()
            row.updated_at = now_utc()
            session.add(row)
            repo = TenantScopedRepository(session, SYSTEM_CONTEXT)
            repo.audit(
                action="billing.event.requeued",
                resource="billing_event",
                resource_id=row.id,
                tenant_id=row.tenant_id,
                detail={"external_event_id": row.external_event_id},
            )
            session.commit()
        return self._process(event_id, token)
