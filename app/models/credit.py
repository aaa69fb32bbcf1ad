from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base

CREDIT_NUMERIC = Numeric(18, 4)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    ALLOCATION = "allocation"
    PLAN_ALLOCATION = "plan_allocation"
    SEASONAL_CAMPAIGN = "seasonal_campaign"
    EXPIRY = "expiry"
    REFUND_ADJUSTMENT = "refund_adjustment"
    TRANSFER = "transfer"


class Credit(Base):
    """
    Balance for one (tenant, entity) pair.

    entity_id deliberately has no foreign key: entities can be deleted out from
    under the ledger, and the consistency auditor needs to see those rows.
    """

    __tablename__ = "credits"
    __table_args__ = (UniqueConstraint("tenant_id", "entity_id"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    entity_id: Mapped[UUID] = mapped_column(PG_UUID(), index=True)
    available_credits: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC, default=Decimal("0")
    )
    reserved_credits: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC, default=Decimal("0")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Bumped on every mutation; guards the UPDATE against lost writes.
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class CreditTransaction(Base):
    """Immutable ledger entry. new_balance == previous_balance + amount."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "entity_id", "sequence"),
        UniqueConstraint("tenant_id", "idempotency_key"),
        Index("ix_credit_transactions_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    entity_id: Mapped[UUID] = mapped_column(PG_UUID(), index=True)
    transaction_type: Mapped[str] = mapped_column(String(32), index=True)
    amount: Mapped[Decimal] = mapped_column(CREDIT_NUMERIC)
    previous_balance: Mapped[Decimal] = mapped_column(CREDIT_NUMERIC)
    new_balance: Mapped[Decimal] = mapped_column(CREDIT_NUMERIC)
    operation_code: Mapped[str] = mapped_column(String(255), index=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    initiated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
