from decimal import Decimal
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()

__all__ = [
    "PlanTier",
    "PLAN_CATALOG",
    "normalize_plan",
    "get_plan_config",
    "get_plan_credits",
    "get_plan_limit",
    "admin_permissions_for_plan",
]


class PlanTier(str, Enum):
    """Available subscription plans."""

    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


# Plan catalog. Credits are the annual allowance granted on activation.
# A limit of None means unlimited.
PLAN_CATALOG: dict[PlanTier, dict[str, Any]] = {
    PlanTier.FREE: {
        "name": "Free",
        "price_usd": {"monthly": 0, "annual": 0},
        "credits": Decimal("1000"),
        "credit_expiry_days": 30,
        "applications": ["crm"],
        "modules": {
            "crm": ["leads", "contacts", "dashboard"],
        },
        "limits": {"users": 2, "roles": 1},
    },
    PlanTier.STARTER: {
        "name": "Starter",
        "price_usd": {"monthly": 10, "annual": 120},
        "credits": Decimal("60000"),
        "credit_expiry_days": 365,
        "applications": ["crm"],
        "modules": {
            "crm": [
                "leads",
                "contacts",
                "accounts",
                "opportunities",
                "tickets",
                "communications",
                "dashboard",
                "users",
            ],
        },
        "limits": {"users": 5, "roles": 3},
    },
    PlanTier.PROFESSIONAL: {
        "name": "Professional",
        "price_usd": {"monthly": 20, "annual": 240},
        "credits": Decimal("300000"),
        "credit_expiry_days": 365,
        "applications": ["crm", "hr"],
        "modules": {
            "crm": [
                "leads",
                "contacts",
                "accounts",
                "opportunities",
                "quotations",
                "tickets",
                "communications",
                "invoices",
                "dashboard",
                "users",
                "roles",
            ],
            "hr": ["employees", "payroll", "leave", "documents"],
        },
        "limits": {"users": 25, "roles": 10},
    },
    PlanTier.ENTERPRISE: {
        "name": "Enterprise",
        "price_usd": {"monthly": 30, "annual": 360},
        "credits": Decimal("1200000"),
        "credit_expiry_days": 365,
        "applications": ["crm", "hr", "affiliate", "operations"],
        "modules": {
            "crm": [
                "leads",
                "contacts",
                "accounts",
                "opportunities",
                "quotations",
                "tickets",
                "communications",
                "invoices",
                "dashboard",
                "users",
                "roles",
            ],
            "hr": ["employees", "payroll", "leave", "documents"],
            "affiliate": ["partners", "commissions", "payouts"],
            "operations": ["inventory", "procurement", "warehouses"],
        },
        "limits": {"users": None, "roles": None},
    },
}


def normalize_plan(plan: PlanTier | str | None) -> PlanTier | None:
    """Map a plan id from metadata or the gateway to a catalog tier, if known."""
    if isinstance(plan, PlanTier):
        return plan
    if isinstance(plan, str):
        try:
            return PlanTier(plan.strip().lower())
        except ValueError:
            logger.warning("unknown_plan_id", plan=plan)
            return None
    return None


def get_plan_config(plan: PlanTier | str) -> dict[str, Any]:
    """Get catalog entry for a plan. Unknown plans raise ValueError."""
    resolved = normalize_plan(plan)
    if resolved is None:
        raise ValueError(f"Unsupported plan: {plan!r}")
    return PLAN_CATALOG[resolved]


def get_plan_credits(plan: PlanTier | str) -> Decimal:
    return Decimal(get_plan_config(plan)["credits"])


def get_plan_limit(plan: PlanTier | str, limit_name: str) -> Any:
    """Get a limit value for a plan (None = unlimited, 0 = unknown limit)."""
    limits: dict[str, Any] = get_plan_config(plan).get("limits", {})
    return limits.get(limit_name, 0)


def admin_permissions_for_plan(plan: PlanTier | str) -> dict[str, dict[str, list[str]]]:
    """
    Administrator role permissions for a plan: full access to every module of
    every application the plan includes.
    """
    config = get_plan_config(plan)
    return {
        app_code: {module: ["*"] for module in modules}
        for app_code, modules in config["modules"].items()
    }
