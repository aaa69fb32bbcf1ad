from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models.credit import CREDIT_NUMERIC
from app.shared.db.base import Base, JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CampaignStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


class AllocationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CampaignCreditType(str, Enum):
    FREE_DISTRIBUTION = "free_distribution"
    PROMOTIONAL = "promotional"
    HOLIDAY = "holiday"
    BONUS = "bonus"
    EVENT = "event"


class DistributionMethod(str, Enum):
    EQUAL = "equal"
    FIXED = "fixed"
    FLAT = "flat"


class AllocationMode(str, Enum):
    PRIMARY_ORG = "primary_org"
    APPLICATION_SPECIFIC = "application_specific"


class SeasonalCampaign(Base):
    __tablename__ = "seasonal_campaigns"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    credit_type: Mapped[str] = mapped_column(String(32))
    total_credits: Mapped[Decimal] = mapped_column(CREDIT_NUMERIC)
    credits_per_tenant: Mapped[Optional[Decimal]] = mapped_column(
        CREDIT_NUMERIC, nullable=True
    )
    distribution_method: Mapped[str] = mapped_column(
        String(16), default=DistributionMethod.EQUAL.value
    )
    allocation_mode: Mapped[str] = mapped_column(
        String(32), default=AllocationMode.PRIMARY_ORG.value
    )
    target_applications: Mapped[List[str]] = mapped_column(JSONType, default=list)
    target_all_tenants: Mapped[bool] = mapped_column(Boolean, default=False)
    target_tenant_ids: Mapped[List[str]] = mapped_column(JSONType, default=list)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    send_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    notification_template: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True
    )
    distribution_status: Mapped[str] = mapped_column(
        String(32), default=CampaignStatus.PENDING.value, index=True
    )
    distributed_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    distributed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    warning_sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class SeasonalCreditAllocation(Base):
    __tablename__ = "seasonal_credit_allocations"
    __table_args__ = (
        UniqueConstraint("campaign_id", "tenant_id", "entity_id", "target_application"),
        Index("ix_seasonal_allocations_expiry", "is_active", "is_expired", "expires_at"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    campaign_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("seasonal_campaigns.id", ondelete="CASCADE"), index=True
    )
    tenant_id: Mapped[UUID] = mapped_column(PG_UUID(), index=True)
    # Null when the tenant had no primary organization (failed allocation).
    entity_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID(), nullable=True)
    target_application: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True
    )
    allocated_credits: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC, default=Decimal("0")
    )
    used_credits: Mapped[Decimal] = mapped_column(CREDIT_NUMERIC, default=Decimal("0"))
    distribution_status: Mapped[str] = mapped_column(
        String(16), default=AllocationStatus.PENDING.value
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_expired: Mapped[bool] = mapped_column(Boolean, default=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    distributed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expired_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
