from __future__ import annotations

from typing import Any

PERM_WILDCARD = "*"
PERM_IDENTITY_READ = "identity.read"
PERM_IDENTITY_WRITE = "identity.write"
PERM_PLAN_READ = "plan.read"
PERM_USAGE_READ = "usage.read"
PERM_USAGE_WRITE = "usage.write"
PERM_SUBSCRIPTION_READ = "subscription.read"
PERM_SUBSCRIPTION_WRITE = "subscription.write"
PERM_ADMIN_SYSTEM = "admin.system"

TENANT_ADMIN_PERMISSION_NAMES = [
    PERM_IDENTITY_READ,
    PERM_IDENTITY_WRITE,
    PERM_PLAN_READ,
    PERM_USAGE_READ,
    PERM_USAGE_WRITE,
    PERM_SUBSCRIPTION_READ,
    PERM_SUBSCRIPTION_WRITE,
]

SYSTEM_PERMISSION_NAMES = [PERM_ADMIN_SYSTEM, PERM_PLAN_READ]


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    permissions = claims.get("permissions", [])
    if not isinstance(permissions, list):
        return False
    if permission == PERM_ADMIN_SYSTEM:
        # The system permission is never implied by a tenant wildcard.
        return claims.get("system") is True and PERM_ADMIN_SYSTEM in permissions
    return permission in permissions or PERM_WILDCARD in permissions
