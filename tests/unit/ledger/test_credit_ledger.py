import asyncio
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.credit import Credit, CreditTransaction, TransactionType
from app.modules.ledger.domain.ledger import CreditLedger, TransactionFilters
from app.shared.core.exceptions import (
    EntityNotFoundError,
    NegativeBalanceError,
    ValidationError,
)


async def _tx_count(db, tenant_id) -> int:
    return (
        await db.execute(
            select(func.count())
            .select_from(CreditTransaction)
            .where(CreditTransaction.tenant_id == tenant_id)
        )
    ).scalar_one()


@pytest.mark.asyncio
async def test_get_balance_creates_zero_balance(db, tenant_factory):
    tenant, org = await tenant_factory()
    ledger = CreditLedger(db)

    credit = await ledger.get_balance(tenant.id, org.id)

    assert credit.available_credits == Decimal("0")
    assert credit.version == 0
    assert await _tx_count(db, tenant.id) == 0


@pytest.mark.asyncio
async def test_transaction_chain_links_every_mutation(db, tenant_factory):
    tenant, org = await tenant_factory()
    ledger = CreditLedger(db)

    await ledger.apply_delta(tenant.id, org.id, "100", TransactionType.PURCHASE, "purchase")
    await ledger.consume(tenant.id, org.id, "30.5", "crm.lead_enrichment")
    last = await ledger.apply_delta(
        tenant.id, org.id, 5, TransactionType.ALLOCATION, "admin.grant"
    )

    assert last.previous_balance == Decimal("69.5")
    assert last.new_balance == Decimal("74.5")

    history = await ledger.transaction_history(tenant.id, org.id)
    assert [tx.sequence for tx in history] == [1, 2, 3]
    for earlier, later in zip(history, history[1:]):
        assert later.previous_balance == earlier.new_balance
    for tx in history:
        assert tx.previous_balance + tx.amount == tx.new_balance

    credit = await ledger.get_balance(tenant.id, org.id)
    assert credit.available_credits == Decimal("74.5")
    assert credit.version == 3

    report = await ledger.verify_chain(tenant.id, org.id)
    assert report["consistent"] is True
    assert report["chain_balance"] == "74.5"
    assert report["transaction_count"] == 3


@pytest.mark.asyncio
async def test_repeated_idempotency_key_is_a_noop(db, tenant_factory):
    tenant, org = await tenant_factory()
    ledger = CreditLedger(db)

    first = await ledger.apply_delta(
        tenant.id, org.id, "250", TransactionType.PURCHASE, "purchase", "checkout:cs_1"
    )
    second = await ledger.apply_delta(
        tenant.id, org.id, "250", TransactionType.PURCHASE, "purchase", "checkout:cs_1"
    )

    assert first.applied is True
    assert second.applied is False
    assert second.transaction_id == first.transaction_id
    assert second.new_balance == Decimal("250")
    assert await _tx_count(db, tenant.id) == 1
    credit = await ledger.get_balance(tenant.id, org.id)
    assert credit.available_credits == Decimal("250")


@pytest.mark.asyncio
async def test_consumption_cannot_go_negative(db, tenant_factory):
    tenant, org = await tenant_factory()
    ledger = CreditLedger(db)
    await ledger.apply_delta(tenant.id, org.id, "10", TransactionType.PURCHASE, "purchase")

    with pytest.raises(NegativeBalanceError) as exc_info:
        await ledger.consume(tenant.id, org.id, "10.0001", "hr.payroll_run")

    assert exc_info.value.status_code == 409
    assert exc_info.value.details["available"] == "10"
    credit = await ledger.get_balance(tenant.id, org.id)
    assert credit.available_credits == Decimal("10")
    assert await _tx_count(db, tenant.id) == 1


@pytest.mark.asyncio
async def test_clamp_to_zero_shrinks_the_debit(db, tenant_factory):
    tenant, org = await tenant_factory()
    ledger = CreditLedger(db)
    await ledger.apply_delta(tenant.id, org.id, "50", TransactionType.PURCHASE, "purchase")

    mutation = await ledger.apply_delta(
        tenant.id,
        org.id,
        "-80",
        TransactionType.EXPIRY,
        "seasonal_expiry",
        clamp_to_zero=True,
    )

    assert mutation.amount == Decimal("-50")
    assert mutation.new_balance == Decimal("0")
    # A clamp on an empty balance still records a zero-effect entry.
    again = await ledger.apply_delta(
        tenant.id, org.id, "-5", TransactionType.EXPIRY, "seasonal_expiry", clamp_to_zero=True
    )
    assert again.amount == Decimal("0")
    assert again.new_balance == Decimal("0")
    assert (await ledger.verify_chain(tenant.id, org.id))["consistent"] is True


@pytest.mark.asyncio
async def test_non_consumption_debit_may_go_negative_when_not_clamped(db, tenant_factory):
    tenant, org = await tenant_factory()
    ledger = CreditLedger(db)

    mutation = await ledger.apply_delta(
        tenant.id, org.id, "-3", TransactionType.REFUND_ADJUSTMENT, "refund_adjustment"
    )

    assert mutation.new_balance == Decimal("-3")


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, "0.00001"])
async def test_zero_delta_is_rejected(db, tenant_factory, amount):
    tenant, org = await tenant_factory()

    with pytest.raises(ValidationError, match="non-zero"):
        await CreditLedger(db).apply_delta(
            tenant.id, org.id, amount, TransactionType.ALLOCATION, "admin.grant"
        )


@pytest.mark.asyncio
async def test_float_amounts_are_rejected(db, tenant_factory):
    tenant, org = await tenant_factory()

    with pytest.raises(ValueError, match="decimal strings or integers"):
        await CreditLedger(db).apply_delta(
            tenant.id, org.id, 1.5, TransactionType.ALLOCATION, "admin.grant"
        )


@pytest.mark.asyncio
async def test_unknown_or_foreign_entity_is_rejected(db, tenant_factory):
    tenant, _ = await tenant_factory("Tenant A")
    _, other_org = await tenant_factory("Tenant B")
    ledger = CreditLedger(db)

    with pytest.raises(EntityNotFoundError):
        await ledger.apply_delta(
            tenant.id, uuid4(), "1", TransactionType.ALLOCATION, "admin.grant"
        )
    with pytest.raises(EntityNotFoundError):
        await ledger.apply_delta(
            tenant.id, other_org.id, "1", TransactionType.ALLOCATION, "admin.grant"
        )
    assert await _tx_count(db, tenant.id) == 0


@pytest.mark.asyncio
async def test_purchase_falls_back_to_primary_organization(db, tenant_factory):
    tenant, org = await tenant_factory()
    ledger = CreditLedger(db)

    mutation = await ledger.purchase(tenant.id, "1000", entity_id=uuid4())

    tx = await db.get(CreditTransaction, mutation.transaction_id)
    assert tx.entity_id == org.id
    assert tx.transaction_type == TransactionType.PURCHASE.value


@pytest.mark.asyncio
async def test_purchase_without_organization_fails(db, tenant_factory):
    tenant, _ = await tenant_factory(with_org=False)

    with pytest.raises(EntityNotFoundError, match="primary organization"):
        await CreditLedger(db).purchase(tenant.id, "10")


@pytest.mark.asyncio
async def test_list_transactions_filters_and_paginates(db, tenant_factory, entity_factory):
    tenant, org = await tenant_factory()
    branch = await entity_factory(tenant.id, parent_id=org.id)
    ledger = CreditLedger(db)
    await ledger.apply_delta(tenant.id, org.id, "100", TransactionType.PURCHASE, "purchase")
    await ledger.consume(tenant.id, org.id, "7", "crm.export")
    await ledger.apply_delta(tenant.id, branch.id, "20", TransactionType.ALLOCATION, "grant")

    consumption = await ledger.list_transactions(
        TransactionFilters(tenant_id=tenant.id, transaction_type="consumption")
    )
    assert consumption["total"] == 1
    assert consumption["items"][0].amount == Decimal("-7")

    large = await ledger.list_transactions(
        TransactionFilters(tenant_id=tenant.id, min_amount=Decimal("10"))
    )
    assert large["total"] == 2

    by_entity = await ledger.list_transactions(
        TransactionFilters(tenant_id=tenant.id, entity_id=branch.id)
    )
    assert [tx.entity_id for tx in by_entity["items"]] == [branch.id]

    paged = await ledger.list_transactions(
        TransactionFilters(tenant_id=tenant.id), page=2, limit=2
    )
    assert paged["total"] == 3
    assert paged["total_pages"] == 2
    assert len(paged["items"]) == 1


@pytest.mark.asyncio
async def test_verify_chain_reports_first_break(db, tenant_factory):
    tenant, org = await tenant_factory()
    ledger = CreditLedger(db)
    await ledger.apply_delta(tenant.id, org.id, "100", TransactionType.PURCHASE, "purchase")
    second = await ledger.consume(tenant.id, org.id, "40", "crm.export")

    await db.execute(
        update(CreditTransaction)
        .where(CreditTransaction.id == second.transaction_id)
        .values(previous_balance=Decimal("90"))
    )
    await db.commit()

    report = await ledger.verify_chain(tenant.id, org.id)
    assert report["consistent"] is False
    assert report["first_break"]["sequence"] == 2
    assert report["first_break"]["expected_previous_balance"] == "100"


@pytest.mark.asyncio
async def test_verify_chain_flags_balance_drift(db, tenant_factory):
    tenant, org = await tenant_factory()
    ledger = CreditLedger(db)
    await ledger.apply_delta(tenant.id, org.id, "100", TransactionType.PURCHASE, "purchase")

    await db.execute(
        update(Credit)
        .where(Credit.tenant_id == tenant.id)
        .values(available_credits=Decimal("150"))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    db.expire_all()

    report = await ledger.verify_chain(tenant.id, org.id)
    assert report["first_break"] is None
    assert report["stored_balance"] == "150"
    assert report["consistent"] is False


@pytest.mark.asyncio
async def test_concurrent_writers_on_separate_sessions_keep_the_chain(
    async_engine, db, tenant_factory
):
    tenant, org = await tenant_factory()
    tenant_id, org_id = tenant.id, org.id
    sessions = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    amounts = [Decimal("10"), Decimal("2.5"), Decimal("7.25"), Decimal("0.0001"), Decimal("30")]

    async def write(index, amount):
        async with sessions() as session:
            return await CreditLedger(session).apply_delta(
                tenant_id,
                org_id,
                amount,
                TransactionType.ALLOCATION,
                "admin.grant",
                f"grant-{index}",
            )

    mutations = await asyncio.gather(
        *(write(index, amount) for index, amount in enumerate(amounts))
    )

    assert all(mutation.applied for mutation in mutations)
    ledger = CreditLedger(db)
    credit = await ledger.get_balance(tenant_id, org_id)
    assert credit.available_credits == sum(amounts, Decimal("0"))
    assert credit.version == len(amounts)
    report = await ledger.verify_chain(tenant_id, org_id)
    assert report["consistent"] is True
    assert report["transaction_count"] == len(amounts)


class TestTransfer:
    @pytest.mark.asyncio
    async def test_transfer_moves_credits_in_both_chains(self, db, tenant_factory, entity_factory):
        tenant, org = await tenant_factory()
        branch = await entity_factory(tenant.id, parent_id=org.id)
        ledger = CreditLedger(db)
        await ledger.apply_delta(tenant.id, org.id, "100", TransactionType.PURCHASE, "purchase")

        result = await ledger.transfer(
            tenant.id, org.id, branch.id, "40", idempotency_key="move-1"
        )

        assert result.applied is True
        assert result.debit.new_balance == Decimal("60")
        assert result.credit.new_balance == Decimal("40")
        legs = (
            await db.execute(
                select(CreditTransaction).where(
                    CreditTransaction.transaction_type == TransactionType.TRANSFER.value
                )
            )
        ).scalars().all()
        assert {(tx.idempotency_key, tx.amount) for tx in legs} == {
            ("move-1:out", Decimal("-40")),
            ("move-1:in", Decimal("40")),
        }
        assert (await ledger.verify_chain(tenant.id, org.id))["consistent"] is True
        assert (await ledger.verify_chain(tenant.id, branch.id))["consistent"] is True

    @pytest.mark.asyncio
    async def test_repeated_transfer_key_is_a_noop(self, db, tenant_factory, entity_factory):
        tenant, org = await tenant_factory()
        branch = await entity_factory(tenant.id, parent_id=org.id)
        ledger = CreditLedger(db)
        await ledger.apply_delta(tenant.id, org.id, "100", TransactionType.PURCHASE, "purchase")

        first = await ledger.transfer(tenant.id, org.id, branch.id, "25", idempotency_key="k")
        second = await ledger.transfer(tenant.id, org.id, branch.id, "25", idempotency_key="k")

        assert second.applied is False
        assert second.debit.transaction_id == first.debit.transaction_id
        assert second.credit.transaction_id == first.credit.transaction_id
        assert (await ledger.get_balance(tenant.id, org.id)).available_credits == Decimal("75")
        assert await _tx_count(db, tenant.id) == 3

    @pytest.mark.asyncio
    async def test_short_source_leaves_both_balances_untouched(
        self, db, tenant_factory, entity_factory
    ):
        tenant, org = await tenant_factory()
        branch = await entity_factory(tenant.id, parent_id=org.id)
        tenant_id, org_id, branch_id = tenant.id, org.id, branch.id
        ledger = CreditLedger(db)
        await ledger.apply_delta(tenant_id, org_id, "10", TransactionType.PURCHASE, "purchase")

        with pytest.raises(NegativeBalanceError):
            await ledger.transfer(tenant_id, org_id, branch_id, "10.0001")

        assert (await ledger.get_balance(tenant_id, org_id)).available_credits == Decimal("10")
        assert (await ledger.get_balance(tenant_id, branch_id)).available_credits == Decimal("0")
        assert await _tx_count(db, tenant_id) == 1

    @pytest.mark.asyncio
    async def test_transfer_rejects_bad_targets(self, db, tenant_factory):
        tenant, org = await tenant_factory("Tenant A")
        _, other_org = await tenant_factory("Tenant B")
        tenant_id, org_id, other_id = tenant.id, org.id, other_org.id
        ledger = CreditLedger(db)
        await ledger.apply_delta(tenant_id, org_id, "10", TransactionType.PURCHASE, "purchase")

        with pytest.raises(ValidationError, match="same entity"):
            await ledger.transfer(tenant_id, org_id, org_id, "1")
        with pytest.raises(ValidationError, match="must be positive"):
            await ledger.transfer(tenant_id, org_id, other_id, "0")
        with pytest.raises(EntityNotFoundError):
            await ledger.transfer(tenant_id, org_id, other_id, "1")

        assert (await ledger.get_balance(tenant_id, org_id)).available_credits == Decimal("10")
        assert await _tx_count(db, tenant_id) == 1


class TestReporting:
    @pytest.mark.asyncio
    async def test_usage_summary_groups_consumption_by_operation(
        self, db, tenant_factory, entity_factory
    ):
        tenant, org = await tenant_factory()
        branch = await entity_factory(tenant.id, parent_id=org.id)
        ledger = CreditLedger(db)
        await ledger.apply_delta(tenant.id, org.id, "100", TransactionType.PURCHASE, "purchase")
        await ledger.apply_delta(tenant.id, branch.id, "50", TransactionType.ALLOCATION, "grant")
        await ledger.consume(tenant.id, org.id, "5", "crm.export")
        await ledger.consume(tenant.id, org.id, "12.5", "crm.lead_enrichment")
        await ledger.consume(tenant.id, branch.id, "3", "crm.export")

        summary = await ledger.usage_summary(tenant.id)

        assert summary["operation_count"] == 3
        assert summary["total_credits_used"] == "20.5"
        assert summary["operations"] == [
            {"operation_code": "crm.lead_enrichment", "count": 1, "credits_used": "12.5"},
            {"operation_code": "crm.export", "count": 2, "credits_used": "8"},
        ]
        branch_only = await ledger.usage_summary(tenant.id, entity_id=branch.id)
        assert branch_only["total_credits_used"] == "3"

    @pytest.mark.asyncio
    async def test_credit_stats_totals_balances_and_types(
        self, db, tenant_factory, entity_factory
    ):
        tenant, org = await tenant_factory()
        branch = await entity_factory(tenant.id, parent_id=org.id)
        idle = await entity_factory(tenant.id, name="Idle", parent_id=org.id)
        ledger = CreditLedger(db)
        await ledger.apply_delta(tenant.id, org.id, "100", TransactionType.PURCHASE, "purchase")
        await ledger.transfer(tenant.id, org.id, branch.id, "20")
        await ledger.consume(tenant.id, org.id, "30", "crm.export")
        await ledger.get_balance(tenant.id, idle.id)

        stats = await ledger.credit_stats(tenant.id)

        assert stats["entity_count"] == 3
        assert stats["entities_with_credits"] == 2
        assert stats["total_available"] == "70"
        assert stats["average_per_entity"] == "23.3333"
        assert stats["transactions_by_type"] == {
            "consumption": {"count": 1, "net_amount": "-30"},
            "purchase": {"count": 1, "net_amount": "100"},
            "transfer": {"count": 2, "net_amount": "0"},
        }
