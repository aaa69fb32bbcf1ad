"""
Billing API Endpoints - Gateway Webhooks

Provides:
- POST /billing/webhook/{provider} - Stripe or Paystack webhook ingress
- GET /billing/payments/{tenant_id}/stats - Payment and dispute totals
"""

from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.api.v1.billing_ops import process_gateway_webhook
from app.modules.billing.domain.billing.payment_records import PaymentRecorder
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])


@router.post("/webhook/{provider}")
async def handle_webhook(
    provider: str, request: Request, db: AsyncSession = Depends(get_db)
) -> Any:
    """
    Handle gateway webhook events.

    The raw body is verified against the provider's signature header before
    anything is parsed. Duplicate deliveries answer 200 with `skipped`.
    """
    return await process_gateway_webhook(
        request,
        db,
        provider=provider,
        logger=logger,
    )


@router.get("/payments/{tenant_id}/stats")
async def payment_stats(tenant_id: UUID, db: AsyncSession = Depends(get_db)) -> Any:
    return await PaymentRecorder(db).payment_stats(tenant_id)
