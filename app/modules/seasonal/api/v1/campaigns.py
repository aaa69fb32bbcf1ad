"""
Seasonal Campaign API Endpoints

Provides:
- POST /campaigns - Create a campaign
- GET /campaigns - List campaigns
- GET /campaigns/expiring - Allocations expiring soon
- GET /campaigns/tenants/{tenant_id}/expiry-stats - Unused credits expiring in 7 and 30 days
- POST /campaigns/expiry-warnings - Notify tenants about expiring credits
- POST /campaigns/process-expiries - Run the expiry sweep
- GET /campaigns/{id} - Campaign detail
- POST /campaigns/{id}/distribute - Distribute a pending campaign
- GET /campaigns/{id}/status - Distribution summary
- GET /campaigns/{id}/allocations - Per-tenant allocation rows
- POST /campaigns/{id}/extend - Push the expiry back
"""

from typing import Annotated, Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.seasonal.api.v1.campaigns_models import (
    AllocationResponse,
    CampaignCreate,
    CampaignPage,
    CampaignResponse,
    DistributeRequest,
    DistributionStatusResponse,
    ExpiringAllocationResponse,
    ExpiryWarningRequest,
    ExtendExpiryRequest,
    SweepResponse,
)
from app.modules.seasonal.domain.distributor import CampaignDraft, SeasonalDistributor
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Seasonal Campaigns"])


@router.post("", response_model=CampaignResponse, status_code=201)
async def create_campaign(
    body: CampaignCreate, db: Annotated[AsyncSession, Depends(get_db)]
) -> Any:
    draft = CampaignDraft(
        name=body.name,
        credit_type=body.credit_type,
        total_credits=body.total_credits,
        expires_at=body.expires_at,
        target_all_tenants=body.target_all_tenants,
        target_tenant_ids=list(body.target_tenant_ids),
        credits_per_tenant=body.credits_per_tenant,
        distribution_method=body.distribution_method,
        allocation_mode=body.allocation_mode,
        target_applications=list(body.target_applications),
        description=body.description,
        send_notifications=body.send_notifications,
        notification_template=body.notification_template,
    )
    campaign = await SeasonalDistributor(db).create_campaign(
        draft, created_by=body.created_by
    )
    return CampaignResponse.model_validate(campaign)


@router.get("", response_model=CampaignPage)
async def list_campaigns(
    db: Annotated[AsyncSession, Depends(get_db)],
    status: Optional[str] = None,
    credit_type: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> Any:
    result = await SeasonalDistributor(db).list_campaigns(
        status=status, credit_type=credit_type, page=page, limit=limit
    )
    return CampaignPage(
        items=[CampaignResponse.model_validate(c) for c in result["items"]],
        total=result["total"],
        page=result["page"],
        limit=result["limit"],
        total_pages=result["total_pages"],
    )


@router.get("/expiring", response_model=list[ExpiringAllocationResponse])
async def expiring_allocations(
    db: Annotated[AsyncSession, Depends(get_db)],
    days: int = Query(30, ge=1, le=365),
) -> Any:
    items = await SeasonalDistributor(db).expiring_allocations(days)
    return [
        ExpiringAllocationResponse(
            **AllocationResponse.model_validate(item["allocation"]).model_dump(),
            campaign_name=item["campaign"].name,
            credit_type=item["campaign"].credit_type,
            days_until_expiry=item["days_until_expiry"],
        )
        for item in items
    ]


@router.get("/tenants/{tenant_id}/expiry-stats")
async def expiry_stats(
    tenant_id: UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    entity_id: Optional[UUID] = None,
) -> Any:
    return await SeasonalDistributor(db).expiry_stats(tenant_id, entity_id)


@router.post("/expiry-warnings")
async def send_expiry_warnings(
    body: ExpiryWarningRequest, db: Annotated[AsyncSession, Depends(get_db)]
) -> Any:
    return await SeasonalDistributor(db).send_expiry_warnings(body.days)


@router.post("/process-expiries", response_model=SweepResponse)
async def process_expiries(db: Annotated[AsyncSession, Depends(get_db)]) -> Any:
    return await SeasonalDistributor(db).process_expiries()


@router.get("/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(
    campaign_id: UUID, db: Annotated[AsyncSession, Depends(get_db)]
) -> Any:
    campaign = await SeasonalDistributor(db).get_campaign(campaign_id)
    return CampaignResponse.model_validate(campaign)


@router.post("/{campaign_id}/distribute")
async def distribute_campaign(
    campaign_id: UUID,
    body: DistributeRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Any:
    """Sequential per-tenant distribution. Failed tenants are listed, not raised."""
    return await SeasonalDistributor(db).distribute(
        campaign_id, initiated_by=body.initiated_by
    )


@router.get("/{campaign_id}/status", response_model=DistributionStatusResponse)
async def distribution_status(
    campaign_id: UUID, db: Annotated[AsyncSession, Depends(get_db)]
) -> Any:
    return await SeasonalDistributor(db).distribution_status(campaign_id)


@router.get("/{campaign_id}/allocations", response_model=list[AllocationResponse])
async def campaign_allocations(
    campaign_id: UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    tenant_id: Optional[UUID] = None,
) -> Any:
    allocations = await SeasonalDistributor(db).tenant_allocations(
        campaign_id, tenant_id
    )
    return [AllocationResponse.model_validate(a) for a in allocations]


@router.post("/{campaign_id}/extend")
async def extend_expiry(
    campaign_id: UUID,
    body: ExtendExpiryRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Any:
    return await SeasonalDistributor(db).extend_expiry(campaign_id, body.new_expires_at)
