import pytest
from sqlalchemy import select

from app.models.billing import SubscriptionStatus
from app.models.tenant import TenantApplication
from app.modules.billing.domain.billing.subscription_state import (
    SubscriptionStateMachine,
    can_transition,
    normalize_status,
)
from app.shared.core.exceptions import InvalidTransitionError


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        ("trial", "active", True),
        ("trial", "canceled", True),
        ("active", "past_due", True),
        ("active", "trial", False),
        ("past_due", "active", True),
        ("canceled", "active", True),
        ("canceled", "past_due", False),
        ("active", "active", True),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("trialing", SubscriptionStatus.TRIAL),
        ("unpaid", SubscriptionStatus.PAST_DUE),
        (" Cancelled ", SubscriptionStatus.CANCELED),
        ("paused", None),
        (None, None),
    ],
)
def test_normalize_gateway_status(raw, expected):
    assert normalize_status(raw) is expected


@pytest.mark.asyncio
async def test_activation_applies_plan_entitlements(db, tenant_factory):
    tenant, _ = await tenant_factory()
    machine = SubscriptionStateMachine(db)

    subscription, created = await machine.get_or_create(tenant.id)
    again, created_again = await machine.get_or_create(tenant.id)
    assert created is True
    assert created_again is False
    assert again.id == subscription.id
    assert subscription.status == SubscriptionStatus.TRIAL.value

    moved = await machine.transition(
        subscription, SubscriptionStatus.ACTIVE, plan="professional", source="test"
    )
    await db.commit()

    assert moved is True
    assert subscription.plan == "professional"
    assert subscription.subscribed_tools == ["crm", "hr"]
    assert subscription.usage_limits["users"] == 25
    apps = (
        await db.execute(
            select(TenantApplication.app_code).where(TenantApplication.tenant_id == tenant.id)
        )
    ).scalars().all()
    assert sorted(apps) == ["crm", "hr"]


@pytest.mark.asyncio
async def test_strict_transition_rejects_illegal_move(db, tenant_factory):
    tenant, _ = await tenant_factory()
    machine = SubscriptionStateMachine(db)
    subscription, _ = await machine.get_or_create(tenant.id)
    await machine.transition(subscription, SubscriptionStatus.CANCELED, source="test")

    with pytest.raises(InvalidTransitionError) as exc_info:
        await machine.transition(subscription, SubscriptionStatus.PAST_DUE, source="test")
    assert exc_info.value.details == {
        "tenant_id": str(tenant.id),
        "from": "canceled",
        "to": "past_due",
    }

    ignored = await machine.transition(
        subscription, SubscriptionStatus.PAST_DUE, source="test", strict=False
    )
    assert ignored is False
    assert subscription.status == SubscriptionStatus.CANCELED.value


@pytest.mark.asyncio
async def test_cancel_then_reactivate_clears_canceled_at(db, tenant_factory):
    tenant, _ = await tenant_factory()
    machine = SubscriptionStateMachine(db)
    subscription, _ = await machine.get_or_create(tenant.id)

    await machine.transition(subscription, SubscriptionStatus.CANCELED, source="test")
    assert subscription.canceled_at is not None

    await machine.transition(subscription, SubscriptionStatus.ACTIVE, source="test")
    assert subscription.status == SubscriptionStatus.ACTIVE.value
    assert subscription.canceled_at is None
    assert subscription.plan == "free"
