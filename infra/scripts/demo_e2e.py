from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import httpx

from demo_common import (
    assert_status,
    auth_headers,
    bootstrap_admin,
    send_billing_event,
    system_login,
    wait_ok,
)


async def _run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    webhook_secret = os.environ["BILLING_WEBHOOK_SECRET"]
    system_key = os.environ["SYSTEM_ADMIN_KEY"]
    run_id = uuid4().hex[:8]

    timeout = httpx.Timeout(20.0)
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        await wait_ok(client, "/healthz")
        await wait_ok(client, "/readyz")

        tenant_id, token = await bootstrap_admin(client, "e2e")
        headers = auth_headers(token)

        current_resp = await client.get(f"/api/tenants/{tenant_id}/subscription", headers=headers)
        assert_status(current_resp, 200)
        if current_resp.json()["plan_slug"] != "free":
            raise RuntimeError(f"new tenant did not start on free: {current_resp.json()}")

        for _ in range(3):
            gate_resp = await client.post(
                f"/api/tenants/{tenant_id}/usage/gate",
                json={"event_type": "upload", "limit_type": "uploads"},
                headers=headers,
            )
            assert_status(gate_resp, 201)
        blocked_resp = await client.post(
            f"/api/tenants/{tenant_id}/usage/gate",
            json={"event_type": "upload", "limit_type": "uploads"},
            headers=headers,
        )
        assert_status(blocked_resp, 402)

        preview_resp = await client.post(
            f"/api/tenants/{tenant_id}/subscription/plan-change/preview",
            json={"new_plan_slug": "pro"},
            headers=headers,
        )
        assert_status(preview_resp, 200)

        now = datetime.now(UTC)
        result = await send_billing_event(
            client,
            webhook_secret,
            "subscription.created",
            {
                "tenant_id": tenant_id,
                "subscription_id": f"sub_{run_id}",
                "customer_id": f"cus_{run_id}",
                "plan_slug": "pro",
                "status": "active",
                "current_period_start": now.isoformat(),
                "current_period_end": (now + timedelta(days=30)).isoformat(),
            },
            event_id=f"evt_created_{run_id}",
        )
        if result["processed"] is not True:
            raise RuntimeError(f"subscription.created was not processed: {result}")

        duplicate = await send_billing_event(
            client,
            webhook_secret,
            "subscription.created",
            {"tenant_id": tenant_id, "subscription_id": f"sub_{run_id}", "plan_slug": "pro", "status": "active"},
            event_id=f"evt_created_{run_id}",
        )
        if duplicate["already_processed"] is not True:
            raise RuntimeError(f"duplicate delivery was reprocessed: {duplicate}")

        quota_resp = await client.get(f"/api/tenants/{tenant_id}/usage/quota/uploads", headers=headers)
        assert_status(quota_resp, 200)
        if quota_resp.json()["exceeded"] is not False:
            raise RuntimeError(f"upgrade did not lift the upload quota: {quota_resp.json()}")

        system_headers = auth_headers(await system_login(client, system_key))
        analytics_resp = await client.get("/api/admin/analytics/subscriptions", headers=system_headers)
        assert_status(analytics_resp, 200)
        sweep_resp = await client.post("/api/admin/sweeps/expire-trials", headers=system_headers)
        assert_status(sweep_resp, 200)

    print("demo_e2e: subscription and metering flow ok")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
