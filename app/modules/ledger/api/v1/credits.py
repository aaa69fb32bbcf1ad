"""
Credit API Endpoints

Provides:
- GET /credits/{tenant_id}/entities/{entity_id}/balance
- GET /credits/{tenant_id}/entities/{entity_id}/history
- POST /credits/{tenant_id}/consume
- POST /credits/{tenant_id}/bulk-allocate
- POST /credits/{tenant_id}/transfer
- GET /credits/{tenant_id}/usage
- GET /credits/{tenant_id}/stats
- GET /credits/transactions
"""

from datetime import datetime
from typing import Annotated, Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.ledger.api.v1.credits_models import (
    BalanceResponse,
    BulkAllocateRequest,
    ConsumeRequest,
    HistoryResponse,
    TransactionPage,
    TransactionResponse,
    TransferRequest,
)
from app.modules.ledger.domain.administration import (
    AllocationRequest,
    CreditAdministration,
)
from app.modules.ledger.domain.ledger import CreditLedger, TransactionFilters
from app.shared.core.config import get_settings
from app.shared.core.exceptions import ValidationError
from app.shared.core.money import to_credits
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Credits"])


def _optional_credits(value: Optional[str], field: str) -> Any:
    if value is None:
        return None
    try:
        return to_credits(value)
    except ValueError as exc:
        raise ValidationError(f"{field} must be a decimal string", details={field: value}) from exc


@router.get(
    "/{tenant_id}/entities/{entity_id}/balance", response_model=BalanceResponse
)
async def get_balance(
    tenant_id: UUID,
    entity_id: UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Any:
    credit = await CreditLedger(db).get_balance(tenant_id, entity_id)
    return BalanceResponse.model_validate(credit)


@router.get(
    "/{tenant_id}/entities/{entity_id}/history", response_model=HistoryResponse
)
async def get_history(
    tenant_id: UUID,
    entity_id: UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Any:
    ledger = CreditLedger(db)
    await ledger.directory.require(tenant_id, entity_id)
    transactions = await ledger.transaction_history(tenant_id, entity_id)
    verification = await ledger.verify_chain(tenant_id, entity_id)
    return HistoryResponse(
        transactions=[TransactionResponse.model_validate(tx) for tx in transactions],
        verification=verification,
    )


@router.post("/{tenant_id}/consume")
async def consume_credits(
    tenant_id: UUID,
    body: ConsumeRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Any:
    """Debit credits for an application operation. 409 when the balance is short."""
    mutation = await CreditLedger(db).consume(
        tenant_id,
        body.entity_id,
        body.amount,
        body.operation_code,
        body.idempotency_key,
        initiated_by=body.initiated_by,
    )
    return {
        "tenant_id": str(tenant_id),
        "entity_id": str(body.entity_id),
        **mutation.as_dict(),
    }


@router.post("/{tenant_id}/bulk-allocate")
async def bulk_allocate(
    tenant_id: UUID,
    body: BulkAllocateRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Any:
    service = CreditAdministration(db)
    return await service.bulk_allocate(
        tenant_id,
        [
            AllocationRequest(
                entity_id=item.entity_id,
                amount=item.amount,
                idempotency_key=item.idempotency_key,
            )
            for item in body.allocations
        ],
        reason=body.reason,
        initiated_by=body.initiated_by,
    )


@router.get("/transactions", response_model=TransactionPage)
async def list_transactions(
    db: Annotated[AsyncSession, Depends(get_db)],
    tenant_id: Optional[UUID] = None,
    entity_id: Optional[UUID] = None,
    transaction_type: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    min_amount: Optional[str] = None,
    max_amount: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
) -> Any:
    limit = min(limit, get_settings().TRANSACTION_PAGE_LIMIT_MAX)
    filters = TransactionFilters(
        tenant_id=tenant_id,
        entity_id=entity_id,
        transaction_type=transaction_type,
        start_date=start_date,
        end_date=end_date,
        min_amount=_optional_credits(min_amount, "min_amount"),
        max_amount=_optional_credits(max_amount, "max_amount"),
    )
    result = await CreditLedger(db).list_transactions(filters, page=page, limit=limit)
    return TransactionPage(
        items=[TransactionResponse.model_validate(tx) for tx in result["items"]],
        total=result["total"],
        page=result["page"],
        limit=result["limit"],
        total_pages=result["total_pages"],
    )


@router.post("/{tenant_id}/transfer")
async def transfer_credits(
    tenant_id: UUID,
    body: TransferRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Any:
    """Move credits between two entities. 409 when the source balance is short."""
    result = await CreditLedger(db).transfer(
        tenant_id,
        body.from_entity_id,
        body.to_entity_id,
        body.amount,
        idempotency_key=body.idempotency_key,
        description=body.description,
        initiated_by=body.initiated_by,
    )
    return {
        "tenant_id": str(tenant_id),
        "from_entity_id": str(body.from_entity_id),
        "to_entity_id": str(body.to_entity_id),
        **result.as_dict(),
    }


@router.get("/{tenant_id}/usage")
async def usage_summary(
    tenant_id: UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    entity_id: Optional[UUID] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Any:
    return await CreditLedger(db).usage_summary(
        tenant_id, entity_id=entity_id, start_date=start_date, end_date=end_date
    )


@router.get("/{tenant_id}/stats")
async def credit_stats(
    tenant_id: UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Any:
    return await CreditLedger(db).credit_stats(tenant_id)
