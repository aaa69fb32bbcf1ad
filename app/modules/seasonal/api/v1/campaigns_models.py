from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.seasonal import AllocationMode, DistributionMethod
from app.schemas.amounts import CreditAmount


class CampaignCreate(BaseModel):
    name: str = Field(..., max_length=255)
    credit_type: str
    total_credits: CreditAmount
    expires_at: datetime
    description: Optional[str] = None
    target_all_tenants: bool = False
    target_tenant_ids: List[UUID] = Field(default_factory=list)
    credits_per_tenant: Optional[CreditAmount] = None
    distribution_method: str = DistributionMethod.EQUAL.value
    allocation_mode: str = AllocationMode.PRIMARY_ORG.value
    target_applications: List[str] = Field(default_factory=list)
    send_notifications: bool = True
    notification_template: Optional[str] = Field(default=None, max_length=100)
    created_by: Optional[str] = None


class CampaignResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: Optional[str] = None
    credit_type: str
    total_credits: CreditAmount
    credits_per_tenant: Optional[CreditAmount] = None
    distribution_method: str
    allocation_mode: str
    target_applications: List[str]
    target_all_tenants: bool
    target_tenant_ids: List[str]
    expires_at: datetime
    send_notifications: bool
    distribution_status: str
    distributed_count: int
    failed_count: int
    created_by: Optional[str] = None
    created_at: datetime
    distributed_at: Optional[datetime] = None
    warning_sent_at: Optional[datetime] = None


class CampaignPage(BaseModel):
    items: List[CampaignResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class AllocationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    campaign_id: UUID
    tenant_id: UUID
    entity_id: Optional[UUID] = None
    target_application: Optional[str] = None
    allocated_credits: CreditAmount
    used_credits: CreditAmount
    distribution_status: str
    error_message: Optional[str] = None
    is_active: bool
    is_expired: bool
    expires_at: datetime
    distributed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None


class ExpiringAllocationResponse(AllocationResponse):
    campaign_name: str
    credit_type: str
    days_until_expiry: int


class DistributeRequest(BaseModel):
    initiated_by: Optional[str] = None


class ExtendExpiryRequest(BaseModel):
    new_expires_at: datetime


class ExpiryWarningRequest(BaseModel):
    days: Optional[int] = Field(default=None, ge=1, le=365)


class DistributionStatusResponse(BaseModel):
    campaign_id: UUID
    status: str
    distributed_count: int
    failed_count: int
    total_targeted: int
    allocations_by_status: Dict[str, int]
    total_credits_allocated: str
    total_credits_used: str
    utilization_rate: str
    pending_tenants: List[str]


class SweepResponse(BaseModel):
    processed_count: int
    total_expired: int
    failed_count: int
    credits_clawed_back: str
    failures: List[Dict[str, Any]]
