from __future__ import annotations

import asyncio
import json
import threading
import time
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from saas_control import main as app_main
from saas_control.domain.errors import SignatureError, TransientExternalError
from saas_control.domain.models import AuditLog, BillingEvent, BillingWebhookPayload, EventRecord, Subscription
from saas_control.domain.permissions import SYSTEM_PERMISSION_NAMES
from saas_control.infra.auth import SYSTEM_TENANT_ID, create_access_token
from saas_control.services import billing_event_service
from saas_control.services.billing_event_service import (
    SIGNATURE_HEADER,
    BillingEventService,
    sign_payload,
    verify_signature,
)

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture()
def billing_client(
    test_engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[TestClient, None, None]:
    monkeypatch.setattr(billing_event_service, "BILLING_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(billing_event_service, "BILLING_RETRY_BASE_SECONDS", 0)
    client = TestClient(app_main.app)
    yield client
    client.close()
    app_main.app.dependency_overrides.clear()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _system_headers() -> dict[str, str]:
    token = create_access_token(
        user_id="operator:ops",
        tenant_id=SYSTEM_TENANT_ID,
        permissions=list(SYSTEM_PERMISSION_NAMES),
        system=True,
    )
    return _auth_header(token)


def _create_tenant(client: TestClient, name: str) -> str:
    response = client.post("/api/identity/tenants", json={"name": name})
    assert response.status_code == 201
    return response.json()["id"]


def _event(event_id: str, event_type: str, **data: Any) -> dict[str, Any]:
    return {"id": event_id, "type": event_type, "data": data}


def _deliver(client: TestClient, payload: dict[str, Any], *, secret: str = WEBHOOK_SECRET):
    raw = json.dumps(payload).encode()
    header = sign_payload(raw, secret, int(time.time()))
    return client.post(
        "/api/billing/webhooks",
        content=raw,
        headers={SIGNATURE_HEADER: header, "Content-Type": "application/json"},
    )


def _created(tenant_id: str, event_id: str = "evt_created", **overrides: Any) -> dict[str, Any]:
    now = datetime.now(UTC)
    data: dict[str, Any] = {
        "tenant_id": tenant_id,
        "subscription_id": "sub_ext_1",
        "customer_id": "cus_1",
        "plan_slug": "pro",
        "status": "active",
        "current_period_start": now.isoformat(),
        "current_period_end": (now + timedelta(days=30)).isoformat(),
    }
    data.update(overrides)
    return _event(event_id, "subscription.created", **data)


def _subscription(engine: Engine, external_id: str = "sub_ext_1") -> Subscription:
    with Session(engine) as session:
        row = session.exec(select(Subscription).where(Subscription.external_subscription_id == external_id)).one()
    return row


def test_verify_signature_accepts_fresh_hmac() -> None:
    raw = b'{"id": "evt_1"}'
    header = sign_payload(raw, "secret", 1_700_000_000)
    verify_signature(raw, header, secret="secret", tolerance_seconds=300, now=1_700_000_100)


@pytest.mark.parametrize(
    ("body", "header", "now"),
    [
        (b'{"id": "evt_2"}', sign_payload(b'{"id": "evt_1"}', "secret", 1_700_000_000), 1_700_000_000),
        (b'{"id": "evt_1"}', sign_payload(b'{"id": "evt_1"}', "other", 1_700_000_000), 1_700_000_000),
        (b'{"id": "evt_1"}', sign_payload(b'{"id": "evt_1"}', "secret", 1_700_000_000), 1_700_000_301),
        (b'{"id": "evt_1"}', "t=abc,v1=00", 1_700_000_000),
        (b'{"id": "evt_1"}', "v1=00", 1_700_000_000),
        (b'{"id": "evt_1"}', None, 1_700_000_000),
    ],
)
def test_verify_signature_rejects(body: bytes, header: str | None, now: int) -> None:
    with pytest.raises(SignatureError):
        verify_signature(body, header, secret="secret", tolerance_seconds=300, now=now)


def test_verify_signature_requires_configured_secret() -> None:
    raw = b"{}"
    with pytest.raises(SignatureError):
        verify_signature(raw, sign_payload(raw, "secret", 1), secret="", now=1)


def test_created_event_is_idempotent(billing_client: TestClient, test_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_client, "billing-idem")

    first = _deliver(billing_client, _created(tenant_id))
    assert first.status_code == 200
    assert first.json() == {
        "external_event_id": "evt_created",
        "already_processed": False,
        "processed": True,
        "failed_terminal": False,
    }
    subscription = _subscription(test_engine)
    assert subscription.status == "active"
    assert subscription.plan_slug == "pro"

    with Session(test_engine) as session:
        audit_count = len(session.exec(select(AuditLog)).all())

    second = _deliver(billing_client, _created(tenant_id))
    assert second.status_code == 200
    assert second.json()["already_processed"] is True

    after = _subscription(test_engine)
    assert after.model_dump() == subscription.model_dump()
    with Session(test_engine) as session:
        assert len(session.exec(select(AuditLog)).all()) == audit_count
        created_entries = session.exec(
            select(AuditLog)
            .where(AuditLog.action == "subscription.created")
            .where(AuditLog.resource_id == subscription.id)
        ).all()
        events = session.exec(select(BillingEvent)).all()
    assert len(created_entries) == 1
    assert len(events) == 1
    assert events[0].subscription_id == subscription.id
    assert events[0].processed is True


def test_bad_signature_changes_nothing(billing_client: TestClient, test_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_client, "billing-forged")

    response = _deliver(billing_client, _created(tenant_id), secret="forged")
    assert response.status_code == 401

    unsigned = billing_client.post("/api/billing/webhooks", content=json.dumps(_created(tenant_id)).encode())
    assert unsigned.status_code == 401

    with Session(test_engine) as session:
        assert session.exec(select(BillingEvent)).all() == []
        assert session.exec(
            select(Subscription).where(Subscription.external_subscription_id == "sub_ext_1")
        ).all() == []


def test_malformed_payload_is_rejected(billing_client: TestClient) -> None:
    raw = b'{"type": "subscription.created"}'
    response = billing_client.post(
        "/api/billing/webhooks",
        content=raw,
        headers={SIGNATURE_HEADER: sign_payload(raw, WEBHOOK_SECRET, int(time.time()))},
    )
    assert response.status_code == 422


def test_payment_failure_and_recovery(billing_client: TestClient, test_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_client, "billing-dunning")
    assert _deliver(billing_client, _created(tenant_id)).status_code == 200

    failed = _deliver(
        billing_client,
        _event("evt_failed", "invoice.payment_failed", tenant_id=tenant_id, subscription_id="sub_ext_1"),
    )
    assert failed.json()["processed"] is True
    assert _subscription(test_engine).status == "past_due"

    new_end = datetime.now(UTC) + timedelta(days=60)
    succeeded = _deliver(
        billing_client,
        _event(
            "evt_paid",
            "invoice.payment_succeeded",
            tenant_id=tenant_id,
            subscription_id="sub_ext_1",
            current_period_end=new_end.isoformat(),
        ),
    )
    assert succeeded.json()["processed"] is True
    recovered = _subscription(test_engine)
    assert recovered.status == "active"
    assert recovered.current_period_end is not None
    assert abs((recovered.current_period_end.replace(tzinfo=UTC) - new_end).total_seconds()) < 1


def test_provider_cancel_releases_slot(billing_client: TestClient, test_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_client, "billing-cancel")
    _deliver(billing_client, _created(tenant_id))

    response = _deliver(
        billing_client,
        _event("evt_cancel", "subscription.canceled", tenant_id=tenant_id, subscription_id="sub_ext_1"),
    )
    assert response.json()["processed"] is True
    assert _subscription(test_engine).status == "canceled"

    repeat = _deliver(
        billing_client,
        _event("evt_cancel_2", "subscription.canceled", tenant_id=tenant_id, subscription_id="sub_ext_1"),
    )
    assert repeat.json()["processed"] is True
    assert _subscription(test_engine).status == "canceled"


def test_unknown_event_type_is_a_noop(billing_client: TestClient) -> None:
    response = _deliver(billing_client, _event("evt_other", "customer.updated"))
    assert response.status_code == 200
    assert response.json()["processed"] is True


def test_unknown_external_subscription_fails_terminal(billing_client: TestClient, test_engine: Engine) -> None:
    response = _deliver(
        billing_client,
        _event("evt_orphan", "invoice.payment_failed", subscription_id="sub_missing"),
    )
    assert response.status_code == 200
    assert response.json()["failed_terminal"] is True

    with Session(test_engine) as session:
        row = session.exec(select(BillingEvent).where(BillingEvent.external_event_id == "evt_orphan")).one()
    assert row.attempts == 1
    assert row.processed is False
    assert "sub_missing" in (row.processing_error or "")


def test_transient_failures_retry_then_park(
    billing_client: TestClient,
    test_engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(billing_event_service, "BILLING_MAX_ATTEMPTS", 3)
    tenant_id = _create_tenant(billing_client, "billing-flaky")
    original = BillingEventService._dispatch
    state = {"failing": True, "calls": 0}

    def _flaky(self, session, payload, event_row_id):  # type: ignore[no-untyped-def]
        state["calls"] += 1
        if state["failing"]:
            raise TransientExternalError("processor timeout")
        return original(self, session, payload, event_row_id)

    monkeypatch.setattr(BillingEventService, "_dispatch", _flaky)

    response = _deliver(billing_client, _created(tenant_id, event_id="evt_flaky"))
    assert response.status_code == 200
    assert response.json()["failed_terminal"] is True
    assert state["calls"] == 3

    with Session(test_engine) as session:
        row = session.exec(select(BillingEvent).where(BillingEvent.external_event_id == "evt_flaky")).one()
        terminal = session.exec(select(AuditLog).where(AuditLog.action == "billing.event.failed_terminal")).all()
    assert row.attempts == 3
    assert row.failed_terminal is True
    assert len(terminal) == 1
    assert terminal[0].tenant_id == tenant_id

    redelivered = _deliver(billing_client, _created(tenant_id, event_id="evt_flaky"))
    assert redelivered.json()["already_processed"] is True
    assert state["calls"] == 3

    queue = billing_client.get("/api/billing/events/review-queue", headers=_system_headers())
    assert queue.status_code == 200
    assert [item["external_event_id"] for item in queue.json()] == ["evt_flaky"]

    state["failing"] = False
    requeued = billing_client.post(f"/api/billing/events/{row.id}/requeue", headers=_system_headers())
    assert requeued.status_code == 200
    assert requeued.json()["processed"] is True
    assert _subscription(test_engine).plan_slug == "pro"

    detail = billing_client.get(f"/api/billing/events/{row.id}", headers=_system_headers())
    assert detail.json()["processed"] is True
    assert detail.json()["failed_terminal"] is False


def test_review_queue_requires_system_identity(billing_client: TestClient) -> None:
    tenant_id = _create_tenant(billing_client, "billing-nosy")
    billing_client.post(
        "/api/identity/bootstrap-admin",
        json={"tenant_id": tenant_id, "username": "admin", "password": "admin-pass"},
    )
    token = billing_client.post(
        "/api/identity/dev-login",
        json={"tenant_id": tenant_id, "username": "admin", "password": "admin-pass"},
    ).json()["access_token"]
    response = billing_client.get("/api/billing/events/review-queue", headers=_auth_header(token))
    assert response.status_code == 403


def test_retry_pending_picks_up_interrupted_events(billing_client: TestClient, test_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_client, "billing-interrupted")
    payload = _created(tenant_id, event_id="evt_stuck")
    with Session(test_engine) as session:
        session.add(
            BillingEvent(
                external_event_id="evt_stuck",
                event_type="subscription.created",
                payload=json.loads(json.dumps(payload)),
                tenant_id=tenant_id,
                attempts=1,
            )
        )
        session.commit()

    assert BillingEventService().retry_pending() == 1
    assert _subscription(test_engine).status == "active"
    assert BillingEventService().retry_pending() == 0


def test_trial_will_end_publishes_event(billing_client: TestClient, test_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_client, "billing-trial")
    trial_end = datetime.now(UTC) + timedelta(days=3)
    _deliver(billing_client, _created(tenant_id, status="trialing", trial_end=trial_end.isoformat()))

    response = _deliver(
        billing_client,
        _event("evt_trial_end", "subscription.trial_will_end", tenant_id=tenant_id, subscription_id="sub_ext_1"),
    )
    assert response.json()["processed"] is True
    with Session(test_engine) as session:
        published = session.exec(
            select(EventRecord).where(EventRecord.event_type == "subscription.trial_will_end")
        ).all()
    assert len(published) == 1
    assert published[0].tenant_id == tenant_id
    assert published[0].correlation_id == "evt_trial_end"


def test_duplicate_delivery_during_processing_dispatches_once(
    billing_client: TestClient,
    test_engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    tenant_id = _create_tenant(billing_client, "billing-overlap")
    original = BillingEventService._dispatch
    entered = threading.Event()
    release = threading.Event()
    calls: list[str] = []

    def _slow(self, session, payload, event_row_id):  # type: ignore[no-untyped-def]
        calls.append(threading.current_thread().name)
        entered.set()
        release.wait(timeout=10)
        return original(self, session, payload, event_row_id)

    monkeypatch.setattr(BillingEventService, "_dispatch", _slow)
    payload = BillingWebhookPayload.model_validate(_created(tenant_id, event_id="evt_overlap"))
    results: dict[str, Any] = {}

    def _first_delivery() -> None:
        results["first"] = BillingEventService().ingest(payload)

    worker = threading.Thread(target=_first_delivery, name="first-delivery")
    worker.start()
    assert entered.wait(timeout=10)

    duplicate = BillingEventService().ingest(payload)
    release.set()
    worker.join(timeout=30)

    assert duplicate.already_processed is True
    assert duplicate.processed is False
    assert duplicate.failed_terminal is False
    assert results["first"].processed is True
    assert calls == ["first-delivery"]

    with Session(test_engine) as session:
        row = session.exec(select(BillingEvent).where(BillingEvent.external_event_id == "evt_overlap")).one()
        terminal = session.exec(select(AuditLog).where(AuditLog.action == "billing.event.failed_terminal")).all()
        created = session.exec(
            select(AuditLog)
            .where(AuditLog.tenant_id == tenant_id)
            .where(AuditLog.action == "subscription.created")
        ).all()
    assert row.processed is True
    assert row.failed_terminal is False
    assert row.attempts == 1
    assert terminal == []
    assert len(created) == 1

    redelivered = _deliver(billing_client, _created(tenant_id, event_id="evt_overlap"))
    assert redelivered.json()["already_processed"] is True
    assert redelivered.json()["processed"] is True
    assert calls == ["first-delivery"]


def test_retry_pending_respects_live_leases(billing_client: TestClient, test_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_client, "billing-leases")
    now = datetime.now(UTC)
    with Session(test_engine) as session:
        stale = BillingEvent(
            external_event_id="evt_stale",
            event_type="subscription.created",
            payload=json.loads(json.dumps(_created(tenant_id, event_id="evt_stale"))),
            tenant_id=tenant_id,
            attempts=1,
            claimed_by="crashed-worker",
            claimed_at=now - timedelta(hours=1),
        )
        busy = BillingEvent(
            external_event_id="evt_busy",
            event_type="subscription.created",
            payload=json.loads(
                json.dumps(_created(tenant_id, event_id="evt_busy", subscription_id="sub_ext_2"))
            ),
            tenant_id=tenant_id,
            attempts=1,
            claimed_by="live-worker",
            claimed_at=now,
        )
        session.add(stale)
        session.add(busy)
        session.commit()
        stale_id, busy_id = stale.id, busy.id

    service = BillingEventService()
    assert service.retry_pending() == 1
    assert _subscription(test_engine).status == "active"

    # the crashed holder wakes up late; its parking attempt must not land
    assert service._mark_terminal(stale_id, "late failure", token="crashed-worker") is False
    assert service._mark_terminal(busy_id, "late failure", token="crashed-worker") is False

    with Session(test_engine) as session:
        stale_row = session.get(BillingEvent, stale_id)
        busy_row = session.get(BillingEvent, busy_id)
        terminal = session.exec(select(AuditLog).where(AuditLog.action == "billing.event.failed_terminal")).all()
    assert stale_row is not None and stale_row.processed is True
    assert stale_row.failed_terminal is False
    assert busy_row is not None and busy_row.processed is False
    assert busy_row.claimed_by == "live-worker"
    assert terminal == []


def test_webhook_processing_runs_off_the_event_loop(
    billing_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    seen: list[str] = []
    original = BillingEventService.ingest_signed

    def _recording(self, raw_body, signature_header):  # type: ignore[no-untyped-def]
        try:
            asyncio.get_running_loop()
            seen.append("event-loop")
        except RuntimeError:
            seen.append("worker")
        return original(self, raw_body, signature_header)

    monkeypatch.setattr(BillingEventService, "ingest_signed", _recording)
    tenant_id = _create_tenant(billing_client, "billing-threadpool")
    response = _deliver(billing_client, _created(tenant_id, event_id="evt_threadpool"))
    assert response.status_code == 200
    assert seen == ["worker"]
