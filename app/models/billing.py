from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base, JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    DISPUTED = "disputed"


class PaymentType(str, Enum):
    SUBSCRIPTION = "subscription"
    CREDIT_PURCHASE = "credit_purchase"
    CHARGE = "charge"
    REFUND = "refund"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("tenants.id", ondelete="CASCADE"), unique=True
    )
    plan: Mapped[str] = mapped_column(String(50), default="free")
    status: Mapped[str] = mapped_column(
        String(20), default=SubscriptionStatus.TRIAL.value
    )
    billing_cycle: Mapped[str] = mapped_column(String(20), default="yearly")
    customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    external_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    subscribed_tools: Mapped[List[str]] = mapped_column(JSONType, default=list)
    usage_limits: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_payment_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class Payment(Base):
    """
    One row per gateway payment. payment_intent_id is unique so redelivered
    webhooks update in place. Refund audit rows carry refund_id instead.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    subscription_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    charge_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    invoice_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    refund_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    amount_refunded: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0")
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[str] = mapped_column(
        String(32), default=PaymentStatus.PENDING.value
    )
    payment_type: Mapped[str] = mapped_column(
        String(32), default=PaymentType.SUBSCRIPTION.value
    )
    dispute_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict)
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    disputed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
