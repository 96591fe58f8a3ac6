from __future__ import annotations

import threading
from collections.abc import Generator
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from saas_control import main as app_main
from saas_control.domain.errors import NotFoundError, QuotaExceededError, ValidationError
from saas_control.domain.models import (
    AuditLog,
    Granularity,
    LimitType,
    TenantCreate,
    UsageEvent,
    UsageEventType,
    UsageSummary,
)
from saas_control.infra import auth
from saas_control.infra.tenant import SYSTEM_CONTEXT, TenantContext
from saas_control.services.quota_service import QuotaService
from saas_control.services.tenant_directory_service import TenantDirectoryService
from saas_control.services.usage_ledger_service import UsageLedgerService, parse_period_key, period_bounds


@pytest.fixture()
def usage_client(test_engine: Engine) -> Generator[TestClient, None, None]:
    client = TestClient(app_main.app)
    yield client
    client.close()
    app_main.app.dependency_overrides.clear()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _tenant_admin(client: TestClient, name: str) -> tuple[str, str]:
    tenant_id = client.post("/api/identity/tenants", json={"name": name}).json()["id"]
    client.post(
        "/api/identity/bootstrap-admin",
        json={"tenant_id": tenant_id, "username": "admin", "password": "admin-pass"},
    )
    response = client.post(
        "/api/identity/dev-login",
        json={"tenant_id": tenant_id, "username": "admin", "password": "admin-pass"},
    )
    assert response.status_code == 200
    return tenant_id, response.json()["access_token"]


def _gate_upload(client: TestClient, tenant_id: str, token: str, ref: str):
    return client.post(
        f"/api/tenants/{tenant_id}/usage/gate",
        json={"limit_type": "uploads", "event_type": "upload", "resource_ref": ref},
        headers=_auth_header(token),
    )


def test_period_bounds_and_keys() -> None:
    at = datetime(2026, 12, 31, 23, 59, tzinfo=UTC)
    assert period_bounds(Granularity.MONTHLY, at) == (
        "2026-12",
        datetime(2026, 12, 1, tzinfo=UTC),
        datetime(2027, 1, 1, tzinfo=UTC),
    )
    assert period_bounds(Granularity.DAILY, at)[0] == "2026-12-31"
    assert period_bounds(Granularity.HOURLY, at)[0] == "2026-12-31T23"
    assert parse_period_key(Granularity.DAILY, "2026-02-28") == (
        datetime(2026, 2, 28, tzinfo=UTC),
        datetime(2026, 3, 1, tzinfo=UTC),
    )
    with pytest.raises(ValidationError):
        parse_period_key(Granularity.MONTHLY, "2026-13")
    with pytest.raises(ValidationError):
        parse_period_key(Granularity.HOURLY, "2026-02-28T10")


def test_free_tier_upload_quota_exhaustion(usage_client: TestClient, test_engine: Engine) -> None:
    tenant_id, token = _tenant_admin(usage_client, "uploader")

    for index in range(3):
        response = _gate_upload(usage_client, tenant_id, token, f"file-{index}")
        assert response.status_code == 201
        assert response.json()["current"] == index + 1

    check = usage_client.get(f"/api/tenants/{tenant_id}/usage/quota/uploads", headers=_auth_header(token))
    assert check.status_code == 200
    body = check.json()
    assert (body["current"], body["limit"], body["remaining"], body["exceeded"]) == (3, 3, 0, True)
    assert body["plan_slug"] == "free"

    denied = _gate_upload(usage_client, tenant_id, token, "file-4")
    assert denied.status_code == 402
    assert denied.json()["detail"]["quota"]["exceeded"] is True

    with Session(test_engine) as session:
        events = session.exec(select(UsageEvent).where(UsageEvent.tenant_id == tenant_id)).all()
        rejected = session.exec(select(AuditLog).where(AuditLog.action == "usage.quota_exceeded")).all()
    assert len(events) == 3
    assert len(rejected) == 1
    assert rejected[0].tenant_id == tenant_id


def test_record_updates_daily_and_monthly_counters(usage_client: TestClient, test_engine: Engine) -> None:
    tenant_id, token = _tenant_admin(usage_client, "recorder")

    for _ in range(4):
        response = usage_client.post(
            f"/api/tenants/{tenant_id}/usage/events",
            json={"event_type": "analysis"},
            headers=_auth_header(token),
        )
        assert response.status_code == 201

    monthly = usage_client.get(
        f"/api/tenants/{tenant_id}/usage/summaries",
        params={"granularity": "monthly"},
        headers=_auth_header(token),
    )
    daily = usage_client.get(
        f"/api/tenants/{tenant_id}/usage/summaries",
        params={"granularity": "daily"},
        headers=_auth_header(token),
    )
    assert monthly.json()[0]["analyses"] == 4
    assert daily.json()[0]["analyses"] == 4

    check = usage_client.get(f"/api/tenants/{tenant_id}/usage/quota/analyses", headers=_auth_header(token))
    assert check.json()["current"] == 4
    assert check.json()["exceeded"] is False

    events = usage_client.get(
        f"/api/tenants/{tenant_id}/usage/events",
        params={"event_type": "analysis"},
        headers=_auth_header(token),
    )
    assert len(events.json()) == 4

    hourly = usage_client.get(
        f"/api/tenants/{tenant_id}/usage/summaries",
        params={"granularity": "hourly"},
        headers=_auth_header(token),
    )
    assert hourly.status_code == 422


def test_usage_is_monotonic_per_record(test_engine: Engine) -> None:
    ctx = _service_tenant("monotonic")
    ledger = UsageLedgerService()
    quota = QuotaService(ledger=ledger)
    at = datetime(2026, 5, 10, 9, tzinfo=UTC)

    for expected in range(1, 13):
        ledger.record(ctx, ctx.tenant_id, UsageEventType.ANALYSIS, occurred_at=at)
        verdict = quota.check(ctx, ctx.tenant_id, LimitType.ANALYSES, at=at)
        assert verdict.current == expected
        assert verdict.exceeded is (expected >= 10)


def test_period_isolation(test_engine: Engine) -> None:
    ctx = _service_tenant("periods")
    ledger = UsageLedgerService()
    quota = QuotaService(ledger=ledger)
    march = datetime(2026, 3, 15, tzinfo=UTC)
    april = datetime(2026, 4, 2, tzinfo=UTC)

    ledger.record(ctx, ctx.tenant_id, UsageEventType.UPLOAD, occurred_at=march)
    ledger.record(ctx, ctx.tenant_id, UsageEventType.UPLOAD, occurred_at=april)
    ledger.record(ctx, ctx.tenant_id, UsageEventType.UPLOAD, occurred_at=april + timedelta(days=1))

    assert quota.check(ctx, ctx.tenant_id, LimitType.UPLOADS, at=march).current == 1
    assert quota.check(ctx, ctx.tenant_id, LimitType.UPLOADS, at=april).current == 2
    assert quota.check(ctx, ctx.tenant_id, LimitType.UPLOADS, at=datetime(2026, 5, 1, tzinfo=UTC)).current == 0

    with Session(test_engine) as session:
        keys = {
            (row.granularity, row.period_key): row.uploads
            for row in session.exec(select(UsageSummary).where(UsageSummary.tenant_id == ctx.tenant_id))
        }
    assert keys[("monthly", "2026-03")] == 1
    assert keys[("monthly", "2026-04")] == 2
    assert keys[("daily", "2026-04-02")] == 1
    assert keys[("daily", "2026-04-03")] == 1


def test_tenant_isolation_on_usage(usage_client: TestClient) -> None:
    tenant_a, token_a = _tenant_admin(usage_client, "iso-a")
    tenant_b, token_b = _tenant_admin(usage_client, "iso-b")
    assert _gate_upload(usage_client, tenant_b, token_b, "b-file").status_code == 201

    assert _gate_upload(usage_client, tenant_b, token_a, "sneaky").status_code == 404
    response = usage_client.get(f"/api/tenants/{tenant_b}/usage/overview", headers=_auth_header(token_a))
    assert response.status_code == 404

    check_a = usage_client.get(f"/api/tenants/{tenant_a}/usage/quota/uploads", headers=_auth_header(token_a))
    check_b = usage_client.get(f"/api/tenants/{tenant_b}/usage/quota/uploads", headers=_auth_header(token_b))
    assert check_a.json()["current"] == 0
    assert check_b.json()["current"] == 1


def test_gate_rejects_mismatched_event_type(usage_client: TestClient) -> None:
    tenant_id, token = _tenant_admin(usage_client, "mismatch")
    response = usage_client.post(
        f"/api/tenants/{tenant_id}/usage/gate",
        json={"limit_type": "uploads", "event_type": "analysis"},
        headers=_auth_header(token),
    )
    assert response.status_code == 422


def test_storage_gate_uses_byte_quantities(usage_client: TestClient) -> None:
    tenant_id, token = _tenant_admin(usage_client, "storage")

    def _store(size: int):
        return usage_client.post(
            f"/api/tenants/{tenant_id}/usage/gate",
            json={"limit_type": "storage", "event_type": "storage_delta", "metadata": {"bytes": size}},
            headers=_auth_header(token),
        )

    assert _store(4 * 1024 * 1024).status_code == 201
    assert _store(2 * 1024 * 1024).status_code == 402
    assert _store(-1024 * 1024).status_code == 201
    assert _store(2 * 1024 * 1024).status_code == 201

    missing_bytes = usage_client.post(
        f"/api/tenants/{tenant_id}/usage/events",
        json={"event_type": "storage_delta", "metadata": {}},
        headers=_auth_header(token),
    )
    assert missing_bytes.status_code == 422

    check = usage_client.get(f"/api/tenants/{tenant_id}/usage/quota/storage", headers=_auth_header(token))
    assert check.json()["current"] == 5 * 1024 * 1024


def test_hourly_api_limit_uses_redis_window(
    usage_client: TestClient,
    fake_redis,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    tenant_id, token = _tenant_admin(usage_client, "api-caller")
    system_headers = _auth_header(_system_token(usage_client, monkeypatch))
    plan = usage_client.get("/api/plans/free").json()
    plan["limits"] = {**plan["limits"], "api_calls_per_month": 100, "rate_limit_per_hour": 2}
    upsert = usage_client.put("/api/plans/free", json=plan, headers=system_headers)
    assert upsert.status_code == 200

    def _call():
        return usage_client.post(
            f"/api/tenants/{tenant_id}/usage/gate",
            json={"limit_type": "api_calls_hourly", "event_type": "api_call"},
            headers=_auth_header(token),
        )

    assert _call().status_code == 201
    assert _call().status_code == 201
    denied = _call()
    assert denied.status_code == 402
    assert denied.json()["detail"]["quota"]["limit"] == 2

    window_keys = [key for key in fake_redis.values if key.startswith(f"usage:{tenant_id}:api_calls:")]
    assert len(window_keys) == 1
    assert fake_redis.values[window_keys[0]] == 2
    assert fake_redis.ttls[window_keys[0]] > 3600

    monthly = usage_client.get(f"/api/tenants/{tenant_id}/usage/quota/api_calls", headers=_auth_header(token))
    assert monthly.json()["current"] == 2


def test_overview_lists_every_limit(usage_client: TestClient) -> None:
    tenant_id, token = _tenant_admin(usage_client, "overview")
    _gate_upload(usage_client, tenant_id, token, "one")
    response = usage_client.get(f"/api/tenants/{tenant_id}/usage/overview", headers=_auth_header(token))
    assert response.status_code == 200
    body = response.json()
    assert body["plan_slug"] == "free"
    by_type = {item["limit_type"]: item for item in body["limits"]}
    assert set(by_type) == {item.value for item in LimitType}
    assert by_type["api_calls_daily"]["limit"] is None
    assert by_type["api_calls_daily"]["remaining"] is None
    assert by_type["uploads"]["remaining"] == 2
    assert body["current_month"]["uploads"] == 1


def test_recompute_summary_rebuilds_from_events(
    usage_client: TestClient,
    test_engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    tenant_id, token = _tenant_admin(usage_client, "recompute")
    _gate_upload(usage_client, tenant_id, token, "one")
    _gate_upload(usage_client, tenant_id, token, "two")
    month_key = period_bounds(Granularity.MONTHLY, datetime.now(UTC))[0]

    with Session(test_engine) as session:
        summary = session.exec(
            select(UsageSummary)
            .where(UsageSummary.tenant_id == tenant_id)
            .where(UsageSummary.granularity == "monthly")
        ).one()
        summary.uploads = 99
        session.add(summary)
        session.commit()

    system_headers = _auth_header(_system_token(usage_client, monkeypatch))
    denied = usage_client.post(
        f"/api/admin/tenants/{tenant_id}/usage/recompute",
        json={"period_key": month_key},
        headers=_auth_header(token),
    )
    assert denied.status_code == 403

    response = usage_client.post(
        f"/api/admin/tenants/{tenant_id}/usage/recompute",
        json={"period_key": month_key},
        headers=system_headers,
    )
    assert response.status_code == 200
    assert response.json()["uploads"] == 2

    bad_key = usage_client.post(
        f"/api/admin/tenants/{tenant_id}/usage/recompute",
        json={"granularity": "daily", "period_key": "yesterday"},
        headers=system_headers,
    )
    assert bad_key.status_code == 422

    with Session(test_engine) as session:
        entry = session.exec(select(AuditLog).where(AuditLog.action == "usage.summary_recomputed")).one()
    assert entry.before is not None and entry.before["uploads"] == 99
    assert entry.after is not None and entry.after["uploads"] == 2


def test_retention_sweep_keeps_summaries(test_engine: Engine) -> None:
    ctx = _service_tenant("retention")
    ledger = UsageLedgerService()
    now = datetime(2026, 6, 1, tzinfo=UTC)
    ledger.record(ctx, ctx.tenant_id, UsageEventType.UPLOAD, occurred_at=now - timedelta(days=120))
    ledger.record(ctx, ctx.tenant_id, UsageEventType.UPLOAD, occurred_at=now - timedelta(days=5))

    assert ledger.sweep_retention(now=now, retention_days=90) == 1
    assert ledger.sweep_retention(now=now, retention_days=90) == 0

    remaining = ledger.list_events(SYSTEM_CONTEXT, ctx.tenant_id)
    assert len(remaining) == 1
    summaries = ledger.list_summaries(SYSTEM_CONTEXT, ctx.tenant_id, granularity=Granularity.MONTHLY)
    assert sum(item.uploads for item in summaries) == 2


def test_services_refuse_foreign_tenant(test_engine: Engine) -> None:
    ctx_a = _service_tenant("svc-a")
    ctx_b = _service_tenant("svc-b")
    with pytest.raises(NotFoundError):
        UsageLedgerService().record(ctx_a, ctx_b.tenant_id, UsageEventType.UPLOAD)
    assert UsageLedgerService().list_events(ctx_b, ctx_b.tenant_id) == []


def _service_tenant(name: str) -> TenantContext:
    tenant = TenantDirectoryService().create_tenant(TenantCreate(name=name))
    return TenantContext.for_tenant(tenant.id, "tester")


def _system_token(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setattr(auth, "SYSTEM_ADMIN_KEY", "operator-key")
    response = client.post(
        "/api/identity/system-login",
        json={"operator": "ops", "api_key": "operator-key"},
    )
    assert response.status_code == 200
    return response.json()["access_token"]


def test_concurrent_gates_admit_only_the_last_unit_once(test_engine: Engine) -> None:
    ctx = _service_tenant("last-unit-race")
    ledger = UsageLedgerService()
    ledger.record(ctx, ctx.tenant_id, UsageEventType.UPLOAD)
    ledger.record(ctx, ctx.tenant_id, UsageEventType.UPLOAD)
    assert QuotaService().check(ctx, ctx.tenant_id, LimitType.UPLOADS).current == 2

    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _gate(ref: str) -> None:
        barrier.wait(timeout=10)
        try:
            QuotaService().gate(ctx, ctx.tenant_id, LimitType.UPLOADS, UsageEventType.UPLOAD, resource_ref=ref)
            outcome = "admitted"
        except QuotaExceededError:
            outcome = "denied"
        with lock:
            outcomes.append(outcome)

    workers = [threading.Thread(target=_gate, args=(f"file-{index}",)) for index in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)

    assert sorted(outcomes) == ["admitted", "denied"]
    assert QuotaService().check(ctx, ctx.tenant_id, LimitType.UPLOADS).current == 3
    with Session(test_engine) as session:
        uploads = session.exec(
            select(UsageEvent)
            .where(UsageEvent.tenant_id == ctx.tenant_id)
            .where(UsageEvent.event_type == UsageEventType.UPLOAD)
        ).all()
    assert len(uploads) == 3
