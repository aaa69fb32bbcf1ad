"""Operator-driven credit allocation across explicit entities."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.credit import TransactionType
from app.modules.ledger.domain.ledger import CreditLedger
from app.shared.core.exceptions import CreditlineException, ValidationError
from app.shared.core.money import format_amount, to_credits

logger = structlog.get_logger()

BULK_ALLOCATION_OPERATION = "admin.bulk_allocation"
MAX_BULK_ALLOCATIONS = 500


@dataclass(frozen=True)
class AllocationRequest:
    entity_id: UUID
    amount: Decimal
    operation_code: str = BULK_ALLOCATION_OPERATION
    idempotency_key: Optional[str] = None


class CreditAdministration:
    def __init__(self, db: AsyncSession, ledger: CreditLedger | None = None):
        self.db = db
        self.ledger = ledger or CreditLedger(db)

    async def bulk_allocate(
        self,
        tenant_id: UUID,
        allocations: list[AllocationRequest],
        *,
        reason: Optional[str] = None,
        initiated_by: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Allocate credits to each listed entity as its own ledger mutation.

        Inputs are validated up front; a failure on one entity afterwards is
        reported in its result row and does not stop the rest.
        """
        if not allocations:
            raise ValidationError("At least one allocation is required")
        if len(allocations) > MAX_BULK_ALLOCATIONS:
            raise ValidationError(
                f"At most {MAX_BULK_ALLOCATIONS} allocations per request"
            )
        for allocation in allocations:
            if to_credits(allocation.amount) <= 0:
                raise ValidationError(
                    "Allocation amounts must be positive",
                    details={"entity_id": str(allocation.entity_id)},
                )

        results: list[dict[str, Any]] = []
        for allocation in allocations:
            try:
                mutation = await self.ledger.apply_delta(
                    tenant_id,
                    allocation.entity_id,
                    allocation.amount,
                    TransactionType.ALLOCATION,
                    allocation.operation_code,
                    allocation.idempotency_key,
                    description=reason or "Bulk credit allocation",
                    initiated_by=initiated_by,
                )
            except CreditlineException as exc:
                logger.warning(
                    "bulk_allocation_item_failed",
                    tenant_id=str(tenant_id),
                    entity_id=str(allocation.entity_id),
                    error=exc.message,
                )
                results.append(
                    {
                        "entity_id": str(allocation.entity_id),
                        "success": False,
                        "error": exc.message,
                    }
                )
                continue

            results.append(
                {
                    "entity_id": str(allocation.entity_id),
                    "success": True,
                    "applied": mutation.applied,
                    "amount": format_amount(mutation.amount),
                    "new_balance": format_amount(mutation.new_balance),
                }
            )

        succeeded = sum(1 for r in results if r["success"])
        logger.info(
            "bulk_allocation_completed",
            tenant_id=str(tenant_id),
            requested=len(allocations),
            succeeded=succeeded,
            failed=len(results) - succeeded,
        )
        return {
            "results": results,
            "total": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
        }
