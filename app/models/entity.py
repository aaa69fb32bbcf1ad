from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Uuid as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class EntityType(str, Enum):
    ORGANIZATION = "organization"
    LOCATION = "location"
    DEPARTMENT = "department"
    TEAM = "team"


class Entity(Base):
    """Node in a tenant's organizational hierarchy."""

    __tablename__ = "entities"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(255))
    entity_type: Mapped[str] = mapped_column(
        String(32), default=EntityType.ORGANIZATION.value
    )
    # No FK: the hierarchy survives a parent being hard-deleted, the
    # directory treats a dangling parent as a root.
    parent_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(), nullable=True, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
