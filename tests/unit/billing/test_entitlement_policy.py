from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.models.tenant import Role, Tenant, TenantApplication
from app.modules.billing.domain.billing.entitlement_policy import (
    ADMIN_ROLE_NAME,
    apply_plan_entitlements,
    normalize_plan_value,
    sync_tenant_plan,
)
from app.shared.core.exceptions import NotFoundError
from app.shared.core.pricing import PlanTier


def test_normalize_plan_value_accepts_enum_and_string() -> None:
    assert normalize_plan_value(PlanTier.PROFESSIONAL) == PlanTier.PROFESSIONAL.value
    assert normalize_plan_value(" Starter ") == PlanTier.STARTER.value


def test_normalize_plan_value_rejects_invalid() -> None:
    with pytest.raises(ValueError, match="Unsupported plan value"):
        normalize_plan_value("not-a-plan")


@pytest.mark.asyncio
async def test_sync_tenant_plan_executes_update() -> None:
    db = MagicMock()
    db.execute = AsyncMock(return_value=MagicMock(rowcount=1))

    await sync_tenant_plan(
        db=db,
        tenant_id=uuid4(),
        plan=PlanTier.ENTERPRISE,
        source="test",
    )

    db.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_sync_tenant_plan_raises_on_missing_tenant_row() -> None:
    db = MagicMock()
    db.execute = AsyncMock(return_value=MagicMock(rowcount=0))

    with pytest.raises(NotFoundError, match="Tenant plan sync failed"):
        await sync_tenant_plan(
            db=db,
            tenant_id=uuid4(),
            plan=PlanTier.STARTER.value,
            source="test",
        )


@pytest.mark.asyncio
async def test_downgrade_disables_applications_outside_the_plan(db, tenant_factory) -> None:
    tenant, _ = await tenant_factory()

    upgraded = await apply_plan_entitlements(
        db=db, tenant_id=tenant.id, plan="professional", source="test"
    )
    assert upgraded["applications"] == ["crm", "hr"]

    await apply_plan_entitlements(db=db, tenant_id=tenant.id, plan="starter", source="test")
    await db.commit()

    rows = (
        await db.execute(
            select(TenantApplication).where(TenantApplication.tenant_id == tenant.id)
        )
    ).scalars().all()
    assert {row.app_code: row.is_enabled for row in rows} == {"crm": True, "hr": False}
    assert all(row.subscription_tier == "starter" for row in rows)

    role = (
        await db.execute(select(Role).where(Role.tenant_id == tenant.id))
    ).scalar_one()
    assert role.name == ADMIN_ROLE_NAME
    assert set(role.permissions) == {"crm"}
    assert role.permissions["crm"]["leads"] == ["*"]

    refreshed = await db.get(Tenant, tenant.id)
    assert refreshed.plan == "starter"
