from __future__ import annotations

from typing import Any

UNBOUNDED = -1

DEFAULT_PLANS: tuple[dict[str, Any], ...] = (
    {
        "slug": "free",
        "name": "Free",
        "description": "Perfect for getting started with basic resume analysis",
        "price_monthly": 0,
        "price_yearly": 0,
        "sort_order": 1,
        "features": {
            "advanced_analytics": False,
            "api_access": False,
            "priority_support": False,
            "custom_templates": False,
            "team_collaboration": False,
            "white_label": False,
            "export_formats": ["pdf"],
            "support_level": "community",
        },
        "limits": {
            "max_resumes": 3,
            "max_file_size": 5242880,
            "analyses_per_month": 10,
            "uploads_per_month": 3,
            "storage_limit": 5242880,
            "api_calls_per_month": 0,
            "rate_limit_per_hour": 50,
        },
    },
    {
        "slug": "pro",
        "name": "Pro",
        "description": "Advanced features for professionals and active job seekers",
        "price_monthly": 1999,
        "price_yearly": 19990,
        "sort_order": 2,
        "features": {
            "advanced_analytics": True,
            "api_access": True,
            "priority_support": True,
            "custom_templates": True,
            "team_collaboration": False,
            "white_label": False,
            "export_formats": ["pdf", "docx", "txt"],
            "support_level": "email",
        },
        "limits": {
            "max_resumes": 25,
            "max_file_size": 10485760,
            "analyses_per_month": 100,
            "uploads_per_month": 25,
            "storage_limit": 104857600,
            "api_calls_per_month": 1000,
            "rate_limit_per_hour": 500,
        },
    },
    {
        "slug": "team",
        "name": "Team",
        "description": "Collaboration tools for teams and small businesses",
        "price_monthly": 4999,
        "price_yearly": 49990,
        "sort_order": 3,
        "features": {
            "advanced_analytics": True,
            "api_access": True,
            "priority_support": True,
            "custom_templates": True,
            "team_collaboration": True,
            "white_label": False,
            "export_formats": ["pdf", "docx", "txt", "json"],
            "support_level": "priority",
        },
        "limits": {
            "max_resumes": 100,
            "max_file_size": 20971520,
            "analyses_per_month": 500,
            "uploads_per_month": 100,
            "storage_limit": 524288000,
            "api_calls_per_month": 5000,
            "rate_limit_per_hour": 2000,
            "max_team_members": 10,
        },
    },
    {
        "slug": "enterprise",
        "name": "Enterprise",
        "description": "Custom solutions for large organizations with advanced needs",
        "price_monthly": None,
        "price_yearly": None,
        "sort_order": 4,
        "features": {
            "advanced_analytics": True,
            "api_access": True,
            "priority_support": True,
            "custom_templates": True,
            "team_collaboration": True,
            "white_label": True,
            "export_formats": ["pdf", "docx", "txt", "json", "xml"],
            "support_level": "dedicated",
        },
        "limits": {
            "max_resumes": UNBOUNDED,
            "max_file_size": 52428800,
            "analyses_per_month": UNBOUNDED,
            "uploads_per_month": UNBOUNDED,
            "storage_limit": UNBOUNDED,
            "api_calls_per_month": UNBOUNDED,
            "rate_limit_per_hour": 10000,
            "max_team_members": UNBOUNDED,
        },
    },
)

POPULAR_PLAN_SLUG = "pro"
