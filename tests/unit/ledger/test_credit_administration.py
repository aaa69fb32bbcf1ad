from decimal import Decimal
from uuid import uuid4

import pytest

from app.modules.ledger.domain.administration import (
    MAX_BULK_ALLOCATIONS,
    AllocationRequest,
    CreditAdministration,
)
from app.modules.ledger.domain.ledger import CreditLedger
from app.shared.core.exceptions import ValidationError


@pytest.mark.asyncio
async def test_bulk_allocate_reports_per_entity_results(db, tenant_factory, entity_factory):
    tenant, org = await tenant_factory()
    branch = await entity_factory(tenant.id, parent_id=org.id)
    missing = uuid4()

    result = await CreditAdministration(db).bulk_allocate(
        tenant.id,
        [
            AllocationRequest(entity_id=org.id, amount=Decimal("100")),
            AllocationRequest(entity_id=missing, amount=Decimal("5")),
            AllocationRequest(entity_id=branch.id, amount=Decimal("25.5")),
        ],
        reason="Quarterly top-up",
        initiated_by="ops@example.com",
    )

    assert result["total"] == 3
    assert result["succeeded"] == 2
    assert result["failed"] == 1
    failed = [r for r in result["results"] if not r["success"]]
    assert failed[0]["entity_id"] == str(missing)

    ledger = CreditLedger(db)
    assert (await ledger.get_balance(tenant.id, org.id)).available_credits == Decimal("100")
    assert (await ledger.get_balance(tenant.id, branch.id)).available_credits == Decimal("25.5")


@pytest.mark.asyncio
async def test_bulk_allocate_validates_before_writing(db, tenant_factory):
    tenant, org = await tenant_factory()
    admin = CreditAdministration(db)

    with pytest.raises(ValidationError, match="positive"):
        await admin.bulk_allocate(
            tenant.id,
            [
                AllocationRequest(entity_id=org.id, amount=Decimal("10")),
                AllocationRequest(entity_id=org.id, amount=Decimal("-1")),
            ],
        )
    with pytest.raises(ValidationError, match="At least one"):
        await admin.bulk_allocate(tenant.id, [])
    with pytest.raises(ValidationError, match="At most"):
        await admin.bulk_allocate(
            tenant.id,
            [AllocationRequest(entity_id=org.id, amount=Decimal("1"))]
            * (MAX_BULK_ALLOCATIONS + 1),
        )

    balance = await CreditLedger(db).get_balance(tenant.id, org.id)
    assert balance.available_credits == Decimal("0")


@pytest.mark.asyncio
async def test_bulk_allocate_honours_idempotency_keys(db, tenant_factory):
    tenant, org = await tenant_factory()
    admin = CreditAdministration(db)
    request = [
        AllocationRequest(entity_id=org.id, amount=Decimal("40"), idempotency_key="grant-1")
    ]

    await admin.bulk_allocate(tenant.id, request)
    repeat = await admin.bulk_allocate(tenant.id, request)

    assert repeat["results"][0]["applied"] is False
    balance = await CreditLedger(db).get_balance(tenant.id, org.id)
    assert balance.available_credits == Decimal("40")
