"""Centralized billing entitlement plan synchronization policy."""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.tenant import Role, Tenant, TenantApplication
from app.shared.core.exceptions import NotFoundError
from app.shared.core.pricing import (
    PlanTier,
    admin_permissions_for_plan,
    get_plan_config,
    normalize_plan,
)

logger = structlog.get_logger()

ADMIN_ROLE_NAME = "Administrator"


def normalize_plan_value(plan: str | PlanTier) -> str:
    """Normalize incoming plan values to canonical plan tier values."""
    resolved = normalize_plan(plan)
    if resolved is None:
        raise ValueError(f"Unsupported plan value: {plan!r}")
    return resolved.value


async def sync_tenant_plan(
    *,
    db: AsyncSession,
    tenant_id: UUID,
    plan: str | PlanTier,
    source: str,
) -> None:
    """Apply tenant plan sync from billing outcomes in one validated policy path."""
    normalized_plan = normalize_plan_value(plan)
    result = await db.execute(
        update(Tenant).where(Tenant.id == tenant_id).values(plan=normalized_plan)
    )

    rowcount = getattr(result, "rowcount", None)
    if isinstance(rowcount, int) and rowcount != 1:
        raise NotFoundError(
            "Tenant plan sync failed due to missing or duplicated tenant row",
            details={"tenant_id": str(tenant_id), "updated_rows": rowcount},
        )

    logger.info(
        "billing_entitlement_synced",
        tenant_id=str(tenant_id),
        plan=normalized_plan,
        source=source,
        updated_rows=rowcount,
    )


async def sync_admin_role(
    *, db: AsyncSession, tenant_id: UUID, plan: str | PlanTier
) -> Role:
    """Give the tenant's administrator role every module of the plan."""
    permissions = admin_permissions_for_plan(plan)
    result = await db.execute(
        select(Role).where(Role.tenant_id == tenant_id, Role.name == ADMIN_ROLE_NAME)
    )
    role = result.scalar_one_or_none()
    if role is None:
        role = Role(tenant_id=tenant_id, name=ADMIN_ROLE_NAME, is_admin=True)
        db.add(role)
    role.is_admin = True
    role.permissions = permissions
    await db.flush()
    return role


async def sync_tenant_applications(
    *, db: AsyncSession, tenant_id: UUID, plan: str | PlanTier
) -> list[str]:
    """
    Enable every application the plan includes and disable the rest.

    Rows are upserted by (tenant_id, app_code); applications dropped by a
    downgrade stay in the table with is_enabled=False.
    """
    config = get_plan_config(plan)
    tier = normalize_plan_value(plan)
    modules_by_app: dict[str, list[str]] = config["modules"]

    result = await db.execute(
        select(TenantApplication).where(TenantApplication.tenant_id == tenant_id)
    )
    existing = {row.app_code: row for row in result.scalars().all()}

    for app_code in config["applications"]:
        row = existing.get(app_code)
        if row is None:
            row = TenantApplication(tenant_id=tenant_id, app_code=app_code)
            db.add(row)
        row.is_enabled = True
        row.subscription_tier = tier
        row.enabled_modules = list(modules_by_app.get(app_code, []))

    for app_code, row in existing.items():
        if app_code not in config["applications"] and row.is_enabled:
            row.is_enabled = False
            logger.info(
                "tenant_application_disabled",
                tenant_id=str(tenant_id),
                app_code=app_code,
                plan=tier,
            )

    await db.flush()
    return list(config["applications"])


async def apply_plan_entitlements(
    *,
    db: AsyncSession,
    tenant_id: UUID,
    plan: str | PlanTier,
    source: str,
) -> dict[str, Any]:
    """
    Tenant plan, administrator permissions and application rows for a plan.

    Every step is an upsert in the caller's session, so replaying the same
    billing event converges on the same state.
    """
    await sync_tenant_plan(db=db, tenant_id=tenant_id, plan=plan, source=source)
    role = await sync_admin_role(db=db, tenant_id=tenant_id, plan=plan)
    applications = await sync_tenant_applications(db=db, tenant_id=tenant_id, plan=plan)
    return {
        "plan": normalize_plan_value(plan),
        "admin_role_id": str(role.id),
        "applications": applications,
    }
