from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from saas_control import main as app_main
from saas_control.domain.models import AuditLog, Subscription
from saas_control.domain.permissions import SYSTEM_PERMISSION_NAMES
from saas_control.domain.state_machine import SubscriptionStatus
from saas_control.infra.auth import SYSTEM_TENANT_ID, create_access_token
from saas_control.services.reporting_service import ReportingService
from saas_control.services.subscription_service import SubscriptionLifecycleService


@pytest.fixture()
def reporting_client(test_engine: Engine) -> Generator[TestClient, None, None]:
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


def _attach_pro(tenant_id: str, *, status: SubscriptionStatus = SubscriptionStatus.ACTIVE, **kwargs) -> Subscription:
    now = datetime.now(UTC)
    return SubscriptionLifecycleService().upsert_from_external_event(
        tenant_id=tenant_id,
        external_subscription_id=f"sub_{tenant_id}",
        plan_slug="pro",
        status=status,
        period_start=now,
        period_end=now + timedelta(days=30),
        **kwargs,
    )


def test_subscription_analytics(reporting_client: TestClient) -> None:
    _tenant_admin(reporting_client, "report-free-1")
    _tenant_admin(reporting_client, "report-free-2")
    paid_tenant, _ = _tenant_admin(reporting_client, "report-paid")
    _attach_pro(paid_tenant)

    response = reporting_client.get("/api/admin/analytics/subscriptions", headers=_system_headers())
    assert response.status_code == 200
    body = response.json()
    assert body["total_revenue"] == 1999
    assert body["total_active_subscribers"] == 1
    assert body["total_free_tenants"] == 2

    by_plan = {item["plan_slug"]: item for item in body["plans"]}
    assert by_plan["pro"]["active_subscribers"] == 1
    assert by_plan["pro"]["monthly_revenue"] == 1999
    assert by_plan["free"]["total_subscribers"] == 3
    assert by_plan["free"]["churned_subscribers"] == 1
    assert by_plan["free"]["churn_rate"] == 33.33
    assert by_plan["enterprise"]["monthly_revenue"] == 0


def test_analytics_reject_inverted_window(reporting_client: TestClient) -> None:
    response = reporting_client.get(
        "/api/admin/analytics/usage",
        params={"start_at": "2026-05-01T00:00:00Z", "end_at": "2026-04-01T00:00:00Z"},
        headers=_system_headers(),
    )
    assert response.status_code == 422


def test_usage_analytics_sums_monthly_counters(reporting_client: TestClient) -> None:
    for name in ("usage-report-a", "usage-report-b"):
        tenant_id, token = _tenant_admin(reporting_client, name)
        for _ in range(2):
            reporting_client.post(
                f"/api/tenants/{tenant_id}/usage/events",
                json={"event_type": "upload"},
                headers=_auth_header(token),
            )

    response = reporting_client.get("/api/admin/analytics/usage", headers=_system_headers())
    assert response.status_code == 200
    periods = response.json()["periods"]
    assert len(periods) == 1
    assert periods[0]["tenants"] == 2
    assert periods[0]["uploads"] == 4


def test_admin_routes_require_system_identity(reporting_client: TestClient) -> None:
    _, token = _tenant_admin(reporting_client, "report-nosy")
    assert reporting_client.get("/api/admin/analytics/subscriptions", headers=_auth_header(token)).status_code == 403
    assert reporting_client.post("/api/admin/sweeps/expire-trials", headers=_auth_header(token)).status_code == 403


def test_sweeps_run_and_are_audited(reporting_client: TestClient, test_engine: Engine) -> None:
    tenant_id, _ = _tenant_admin(reporting_client, "sweep-trial")
    _attach_pro(
        tenant_id,
        status=SubscriptionStatus.TRIALING,
        trial_end=datetime.now(UTC) - timedelta(hours=1),
    )

    first = reporting_client.post("/api/admin/sweeps/expire-trials", headers=_system_headers())
    assert first.status_code == 200
    assert first.json()["affected"] == 1
    second = reporting_client.post("/api/admin/sweeps/expire-trials", headers=_system_headers())
    assert second.json()["affected"] == 0

    for name in ("usage-retention", "billing-retry", "scheduled-cancellations"):
        response = reporting_client.post(f"/api/admin/sweeps/{name}", headers=_system_headers())
        assert response.status_code == 200
        assert response.json()["sweep"] == name

    unknown = reporting_client.post("/api/admin/sweeps/vacuum", headers=_system_headers())
    assert unknown.status_code == 422

    with Session(test_engine) as session:
        sweeps = session.exec(select(AuditLog).where(AuditLog.resource == "sweep")).all()
    assert sorted(item.action for item in sweeps) == [
        "admin.sweep.billing-retry",
        "admin.sweep.expire-trials",
        "admin.sweep.expire-trials",
        "admin.sweep.scheduled-cancellations",
        "admin.sweep.usage-retention",
    ]
    assert all(item.detail["operator"] == "operator:ops" for item in sweeps)


def test_audit_retention_purges_old_entries(test_engine: Engine) -> None:
    with Session(test_engine) as session:
        session.add(
            AuditLog(
                tenant_id="tenant-old",
                action="tenant.updated",
                resource="tenant",
                ts=datetime.now(UTC) - timedelta(days=400),
            )
        )
        session.add(AuditLog(tenant_id="tenant-new", action="tenant.updated", resource="tenant"))
        session.commit()

    assert ReportingService().purge_audit_logs(retention_days=365) == 1

    with Session(test_engine) as session:
        remaining = session.exec(select(AuditLog).where(AuditLog.action == "tenant.updated")).all()
    assert [item.tenant_id for item in remaining] == ["tenant-new"]
