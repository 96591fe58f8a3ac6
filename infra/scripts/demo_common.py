from __future__ import annotations

import asyncio
import json
import time
from typing import Any
from uuid import uuid4

import httpx

from saas_control.services.billing_event_service import sign_payload


def assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    last_status = "n/a"
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
            last_status = str(response.status_code)
        except httpx.HTTPError as exc:
            last_status = f"http_error: {exc}"
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}, last_status={last_status}")


async def bootstrap_admin(client: httpx.AsyncClient, prefix: str) -> tuple[str, str]:
    run_id = uuid4().hex[:8]
    tenant_name = f"{prefix}-tenant-{run_id}"
    username = f"{prefix}-admin-{run_id}"
    password = f"pass-{run_id}"

    tenant_resp = await client.post("/api/identity/tenants", json={"name": tenant_name})
    assert_status(tenant_resp, 201)
    tenant_id = tenant_resp.json()["id"]

    bootstrap_resp = await client.post(
        "/api/identity/bootstrap-admin",
        json={"tenant_id": tenant_id, "username": username, "password": password},
    )
    assert_status(bootstrap_resp, 201)

    login_resp = await client.post(
        "/api/identity/dev-login",
        json={"tenant_id": tenant_id, "username": username, "password": password},
    )
    assert_status(login_resp, 200)
    return tenant_id, login_resp.json()["access_token"]


async def system_login(client: httpx.AsyncClient, api_key: str, operator: str = "demo") -> str:
    response = await client.post("/api/identity/system-login", json={"operator": operator, "api_key": api_key})
    assert_status(response, 200)
    return response.json()["access_token"]


async def send_billing_event(
    client: httpx.AsyncClient,
    secret: str,
    event_type: str,
    data: dict[str, Any],
    *,
    event_id: str | None = None,
) -> dict[str, Any]:
    body = json.dumps({"id": event_id or f"evt_{uuid4().hex}", "type": event_type, "data": data}).encode()
    response = await client.post(
        "/api/billing/webhooks",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Billing-Signature": sign_payload(body, secret, int(time.time())),
        },
    )
    assert_status(response, 200)
    return response.json()
