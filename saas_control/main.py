from __future__ import annotations

from fastapi import FastAPI, HTTPException

from saas_control.api.routers import admin, billing_webhooks, identity, plans, subscriptions, usage
from saas_control.infra.db import check_db_ready
from saas_control.infra.logging import setup_logging
from saas_control.infra.redis_state import check_redis_ready

setup_logging()

app = FastAPI(
    title="saas-control",
    description="Usage metering and subscription lifecycle control plane for multi-tenant SaaS.",
    version="0.1.0",
)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(plans.router, prefix="/api/plans", tags=["plans"])
app.include_router(usage.router, prefix="/api/tenants", tags=["usage"])
app.include_router(subscriptions.router, prefix="/api/tenants", tags=["subscriptions"])
app.include_router(billing_webhooks.router, prefix="/api/billing", tags=["billing"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
