from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from saas_control import main as app_main
from saas_control.domain.permissions import SYSTEM_PERMISSION_NAMES
from saas_control.infra.auth import SYSTEM_TENANT_ID, create_access_token


@pytest.fixture()
def plans_client(test_engine: Engine) -> Generator[TestClient, None, None]:
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


def _system_token() -> str:
    return create_access_token(
        user_id="operator:ops",
        tenant_id=SYSTEM_TENANT_ID,
        permissions=list(SYSTEM_PERMISSION_NAMES),
        system=True,
    )


def test_list_plans_is_public_and_ordered(plans_client: TestClient) -> None:
    response = plans_client.get("/api/plans")
    assert response.status_code == 200
    plans = response.json()
    assert [item["slug"] for item in plans] == ["free", "pro", "team", "enterprise"]

    by_slug = {item["slug"]: item for item in plans}
    assert by_slug["pro"]["price_monthly"] == 1999
    assert by_slug["pro"]["yearly_discount_percent"] == 17
    assert by_slug["pro"]["is_popular"] is True
    assert by_slug["free"]["is_popular"] is False
    assert by_slug["enterprise"]["price_monthly"] is None
    assert by_slug["enterprise"]["limits"]["uploads_per_month"] == -1


def test_unknown_plan_is_not_found(plans_client: TestClient) -> None:
    assert plans_client.get("/api/plans/platinum").status_code == 404
    assert plans_client.get("/api/plans/team").json()["name"] == "Team"


def test_tenant_features_follow_free_plan(plans_client: TestClient) -> None:
    tenant_id, token = _tenant_admin(plans_client, "feature-tenant")

    features = plans_client.get(f"/api/plans/tenants/{tenant_id}/features", headers=_auth_header(token))
    assert features.status_code == 200
    assert features.json()["plan_slug"] == "free"
    assert features.json()["features"]["api_access"] is False

    access = plans_client.get(
        f"/api/plans/tenants/{tenant_id}/features/api_access",
        headers=_auth_header(token),
    )
    assert access.json() == {"tenant_id": tenant_id, "feature": "api_access", "allowed": False}

    missing = plans_client.get(
        f"/api/plans/tenants/{tenant_id}/features/teleport",
        headers=_auth_header(token),
    )
    assert missing.json()["allowed"] is False


def test_tenant_features_follow_upgrade(plans_client: TestClient) -> None:
    tenant_id, token = _tenant_admin(plans_client, "upgrading-tenant")
    change = plans_client.post(
        f"/api/tenants/{tenant_id}/subscription/plan-change",
        json={"new_plan_slug": "pro"},
        headers=_auth_header(token),
    )
    assert change.status_code == 200

    access = plans_client.get(
        f"/api/plans/tenants/{tenant_id}/features/api_access",
        headers=_auth_header(token),
    )
    assert access.json()["allowed"] is True


def test_plan_upsert_requires_system_identity(plans_client: TestClient) -> None:
    _, token = _tenant_admin(plans_client, "plan-writer")
    payload = {
        "slug": "starter",
        "name": "Starter",
        "price_monthly": 999,
        "price_yearly": 9990,
        "limits": {"uploads_per_month": 10},
        "sort_order": 2,
    }
    denied = plans_client.put("/api/plans/starter", json=payload, headers=_auth_header(token))
    assert denied.status_code == 403

    created = plans_client.put("/api/plans/starter", json=payload, headers=_auth_header(_system_token()))
    assert created.status_code == 200
    assert created.json()["limits"] == {"uploads_per_month": 10}

    payload["price_monthly"] = 1299
    updated = plans_client.put("/api/plans/starter", json=payload, headers=_auth_header(_system_token()))
    assert updated.status_code == 200
    assert updated.json()["price_monthly"] == 1299

    mismatch = plans_client.put("/api/plans/other", json=payload, headers=_auth_header(_system_token()))
    assert mismatch.status_code == 422
