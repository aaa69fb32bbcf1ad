"""
Subscription State Machine

Per-tenant plan and status. Moving into `active` with a plan also applies the
plan's entitlements in the same session, so replaying the webhook that caused
the transition repairs any half-applied state.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import Subscription, SubscriptionStatus
from app.modules.billing.domain.billing.entitlement_policy import (
    apply_plan_entitlements,
)
from app.shared.core.dates import utcnow
from app.shared.core.exceptions import InvalidTransitionError
from app.shared.core.pricing import get_plan_config, normalize_plan

logger = structlog.get_logger()

_S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    _S.TRIAL: frozenset({_S.ACTIVE, _S.PAST_DUE, _S.CANCELED}),
    _S.ACTIVE: frozenset({_S.PAST_DUE, _S.CANCELED}),
    _S.PAST_DUE: frozenset({_S.ACTIVE, _S.CANCELED}),
    _S.CANCELED: frozenset({_S.ACTIVE}),
}

GATEWAY_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "trial": _S.TRIAL,
    "trialing": _S.TRIAL,
    "active": _S.ACTIVE,
    "past_due": _S.PAST_DUE,
    "unpaid": _S.PAST_DUE,
    "incomplete": _S.PAST_DUE,
    "canceled": _S.CANCELED,
    "cancelled": _S.CANCELED,
    "incomplete_expired": _S.CANCELED,
}


def normalize_status(raw: Optional[str]) -> Optional[SubscriptionStatus]:
    if not raw:
        return None
    return GATEWAY_STATUS_MAP.get(str(raw).strip().lower())


def can_transition(current: SubscriptionStatus | str, target: SubscriptionStatus | str) -> bool:
    current_status = SubscriptionStatus(current)
    target_status = SubscriptionStatus(target)
    if current_status == target_status:
        return True
    return target_status in ALLOWED_TRANSITIONS[current_status]


class SubscriptionStateMachine:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_for_tenant(self, tenant_id: UUID) -> Subscription | None:
        result = await self.db.execute(
            select(Subscription).where(Subscription.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_subscription_id: str) -> Subscription | None:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.external_subscription_id == external_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def get_by_customer(self, customer_id: str) -> Subscription | None:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.customer_id == customer_id)
            .order_by(Subscription.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, tenant_id: UUID) -> tuple[Subscription, bool]:
        subscription = await self.get_for_tenant(tenant_id)
        if subscription is not None:
            return subscription, False
        subscription = Subscription(
            tenant_id=tenant_id,
            status=SubscriptionStatus.TRIAL.value,
            subscribed_tools=[],
            usage_limits={},
        )
        self.db.add(subscription)
        await self.db.flush()
        logger.info("subscription_created", tenant_id=str(tenant_id))
        return subscription, True

    async def transition(
        self,
        subscription: Subscription,
        target: SubscriptionStatus | str,
        *,
        plan: Optional[str] = None,
        source: str,
        strict: bool = True,
        occurred_at: Optional[datetime] = None,
    ) -> bool:
        """
        Move a subscription to `target`.

        Returns False when the move is not allowed and strict is off (gateways
        deliver out of order); raises InvalidTransitionError when strict.
        """
        target_status = SubscriptionStatus(target)
        current_status = SubscriptionStatus(subscription.status)
        if not can_transition(current_status, target_status):
            if strict:
                raise InvalidTransitionError(
                    f"Cannot move subscription from {current_status.value} to {target_status.value}",
                    details={
                        "tenant_id": str(subscription.tenant_id),
                        "from": current_status.value,
                        "to": target_status.value,
                    },
                )
            logger.warning(
                "subscription_transition_ignored",
                tenant_id=str(subscription.tenant_id),
                from_status=current_status.value,
                to_status=target_status.value,
                source=source,
            )
            return False

        subscription.status = target_status.value
        if target_status == SubscriptionStatus.CANCELED:
            subscription.canceled_at = subscription.canceled_at or occurred_at or utcnow()
        elif target_status == SubscriptionStatus.ACTIVE:
            subscription.canceled_at = None

        resolved_plan = normalize_plan(plan) if plan else None
        if target_status == SubscriptionStatus.ACTIVE and resolved_plan is not None:
            config = get_plan_config(resolved_plan)
            subscription.plan = resolved_plan.value
            subscription.subscribed_tools = list(config["applications"])
            subscription.usage_limits = dict(config["limits"])
            await self.db.flush()
            await apply_plan_entitlements(
                db=self.db,
                tenant_id=subscription.tenant_id,
                plan=resolved_plan,
                source=source,
            )
        else:
            await self.db.flush()

        logger.info(
            "subscription_transitioned",
            tenant_id=str(subscription.tenant_id),
            from_status=current_status.value,
            to_status=target_status.value,
            plan=subscription.plan,
            source=source,
        )
        return True
