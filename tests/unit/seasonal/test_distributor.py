"""
Tests for seasonal campaign distribution and expiry

Tests:
1. Equal, fixed, flat and application-specific distribution
2. Per-tenant failure isolation and campaign status
3. Expiry sweeps with clamped clawback
4. Expiry warnings and extensions
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.models.credit import CreditTransaction, TransactionType
from app.models.seasonal import (
    AllocationStatus,
    CampaignStatus,
    SeasonalCreditAllocation,
)
from app.modules.ledger.domain.ledger import CreditLedger
from app.modules.seasonal.domain.distributor import (
    CampaignDraft,
    SeasonalDistributor,
    split_evenly,
    validate_campaign,
)
from app.shared.core.dates import utcnow
from app.shared.core.exceptions import CampaignNotFoundError, ValidationError


def _draft(tenant_ids, total="1000", **overrides):
    fields = {
        "name": "Holiday Boost",
        "credit_type": "holiday",
        "total_credits": Decimal(total),
        "expires_at": utcnow() + timedelta(days=30),
        "target_tenant_ids": list(tenant_ids),
    }
    fields.update(overrides)
    return CampaignDraft(**fields)


async def _balance(db, tenant_id, entity_id) -> Decimal:
    return (await CreditLedger(db).get_balance(tenant_id, entity_id)).available_credits


@pytest.fixture
def distributor(db, notifier):
    return SeasonalDistributor(db, notifier=notifier)


class TestDistribution:
    @pytest.mark.asyncio
    async def test_equal_split_across_tenants(self, db, distributor, notifier, tenant_factory):
        created = [await tenant_factory(f"T{i}") for i in range(4)]
        campaign = await distributor.create_campaign(_draft([t.id for t, _ in created]))

        result = await distributor.distribute(campaign.id, initiated_by="ops@example.com")

        assert result["status"] == CampaignStatus.COMPLETED.value
        assert result["distributed_count"] == 4
        assert result["credits_per_tenant"] == "250"
        for tenant, org in created:
            assert await _balance(db, tenant.id, org.id) == Decimal("250")
        assert notifier.send.await_count == 4
        payload = notifier.send.await_args.args[2]
        assert payload["message"].startswith("You've received 250 free credits")

        tx = (await db.execute(select(CreditTransaction).limit(1))).scalar_one()
        assert tx.transaction_type == TransactionType.SEASONAL_CAMPAIGN.value
        assert tx.idempotency_key.startswith(f"seasonal_campaign:{campaign.id}:")

    @pytest.mark.asyncio
    async def test_tenant_without_organization_fails_alone(self, db, distributor, tenant_factory):
        good, org = await tenant_factory("Good")
        bare, _ = await tenant_factory("Bare", with_org=False)
        # The failed tenant's rollback expires loaded instances.
        good_id, org_id, bare_id = good.id, org.id, bare.id
        campaign_id = (
            await distributor.create_campaign(_draft([good_id, bare_id], total="500"))
        ).id

        result = await distributor.distribute(campaign_id)

        assert result["status"] == CampaignStatus.PARTIAL_SUCCESS.value
        assert result["distributed_count"] == 1
        assert result["failed_count"] == 1
        assert result["failed_tenants"][0]["tenant_id"] == str(bare_id)
        assert "No primary organization" in result["failed_tenants"][0]["error"]
        assert await _balance(db, good_id, org_id) == Decimal("250")

        failed = (
            await db.execute(
                select(SeasonalCreditAllocation).where(
                    SeasonalCreditAllocation.tenant_id == bare_id
                )
            )
        ).scalar_one()
        assert failed.distribution_status == AllocationStatus.FAILED.value
        assert failed.entity_id is None
        assert failed.is_active is False

        status = await distributor.distribution_status(campaign_id)
        assert status["allocations_by_status"] == {"pending": 0, "completed": 1, "failed": 1}
        assert status["total_credits_allocated"] == "250"
        assert status["utilization_rate"] == "0.00%"
        assert status["pending_tenants"] == []

    @pytest.mark.asyncio
    async def test_every_tenant_failing_marks_campaign_failed(self, distributor, tenant_factory):
        bare, _ = await tenant_factory("Bare", with_org=False)
        campaign = await distributor.create_campaign(_draft([bare.id]))

        result = await distributor.distribute(campaign.id)

        assert result["status"] == CampaignStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_campaign_distributes_only_once(self, distributor, tenant_factory):
        tenant, _ = await tenant_factory()
        campaign = await distributor.create_campaign(_draft([tenant.id]))
        await distributor.distribute(campaign.id)

        with pytest.raises(ValidationError) as exc_info:
            await distributor.distribute(campaign.id)
        assert exc_info.value.code == "campaign_already_processed"

    @pytest.mark.asyncio
    async def test_fixed_amount_must_fit_the_total(self, distributor, tenant_factory):
        tenants = [await tenant_factory(f"T{i}") for i in range(3)]
        campaign = await distributor.create_campaign(
            _draft(
                [t.id for t, _ in tenants],
                total="100",
                distribution_method="fixed",
                credits_per_tenant=Decimal("40"),
            )
        )

        with pytest.raises(ValidationError, match="exceeds the campaign total"):
            await distributor.distribute(campaign.id)
        refreshed = await distributor.get_campaign(campaign.id)
        assert refreshed.distribution_status == CampaignStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_flat_method_grants_total_to_each_active_tenant(
        self, db, distributor, tenant_factory
    ):
        first, first_org = await tenant_factory("First")
        second, second_org = await tenant_factory("Second")
        await tenant_factory("Dormant", is_active=False)
        campaign = await distributor.create_campaign(
            _draft([], total="75", distribution_method="flat", target_all_tenants=True)
        )

        result = await distributor.distribute(campaign.id)

        assert result["total_tenants"] == 2
        assert await _balance(db, first.id, first_org.id) == Decimal("75")
        assert await _balance(db, second.id, second_org.id) == Decimal("75")

    @pytest.mark.asyncio
    async def test_no_targeted_tenants_completes_immediately(self, distributor):
        campaign = await distributor.create_campaign(_draft([], target_all_tenants=True))

        result = await distributor.distribute(campaign.id)

        assert result["status"] == CampaignStatus.COMPLETED.value
        assert result["total_tenants"] == 0

    @pytest.mark.asyncio
    async def test_application_specific_rows_share_the_grant(
        self, db, distributor, tenant_factory
    ):
        tenant, org = await tenant_factory()
        campaign = await distributor.create_campaign(
            _draft(
                [tenant.id],
                total="100",
                allocation_mode="application_specific",
                target_applications=["crm", "hr", "affiliate"],
            )
        )

        await distributor.distribute(campaign.id)

        rows = await distributor.tenant_allocations(campaign.id, tenant.id)
        shares = {row.target_application: row.allocated_credits for row in rows}
        assert shares == {
            "crm": Decimal("33.3333"),
            "hr": Decimal("33.3333"),
            "affiliate": Decimal("33.3334"),
        }
        assert sum(shares.values()) == Decimal("100")
        assert await _balance(db, tenant.id, org.id) == Decimal("100")


class TestValidation:
    def test_split_evenly_keeps_the_remainder(self):
        assert split_evenly(Decimal("10"), 3) == [
            Decimal("3.3333"),
            Decimal("3.3333"),
            Decimal("3.3334"),
        ]

    def test_draft_reports_every_problem(self):
        draft = CampaignDraft(
            name=" ",
            credit_type="gift",
            total_credits=Decimal("0"),
            expires_at=utcnow() - timedelta(days=1),
            distribution_method="fixed",
            allocation_mode="application_specific",
            target_applications=["payroll"],
        )

        errors = validate_campaign(draft)

        assert "Campaign name must be between 1-255 characters" in errors
        assert "Total credits must be greater than 0" in errors
        assert "Expiry date must be in the future" in errors
        assert "Must either target all tenants or specify target tenant IDs" in errors
        assert "credits_per_tenant must be greater than 0 for fixed distribution" in errors
        assert any(e.startswith("Invalid credit type") for e in errors)
        assert any(e.startswith("Invalid application codes: payroll") for e in errors)

    @pytest.mark.asyncio
    async def test_invalid_draft_is_not_persisted(self, distributor):
        with pytest.raises(ValidationError) as exc_info:
            await distributor.create_campaign(_draft([], credit_type="gift"))

        assert exc_info.value.details["errors"]
        page = await distributor.list_campaigns()
        assert page["total"] == 0

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, distributor):
        with pytest.raises(CampaignNotFoundError):
            await distributor.get_campaign(uuid4())


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expiry_clawback_is_clamped_to_remaining_balance(
        self, db, distributor, tenant_factory
    ):
        tenant, org = await tenant_factory()
        campaign = await distributor.create_campaign(_draft([tenant.id], total="500"))
        await distributor.distribute(campaign.id)
        ledger = CreditLedger(db)
        await ledger.consume(tenant.id, org.id, "120", "crm.sms")
        await ledger.consume(tenant.id, org.id, "300", "crm.sms")

        later = campaign.expires_at + timedelta(days=1)
        sweep = await distributor.process_expiries(now=later)

        assert sweep["processed_count"] == 1
        assert sweep["credits_clawed_back"] == "80"
        assert await _balance(db, tenant.id, org.id) == Decimal("0")
        allocation = (await distributor.tenant_allocations(campaign.id))[0]
        assert allocation.is_expired is True
        assert allocation.is_active is False

        expiry_tx = (
            await db.execute(
                select(CreditTransaction).where(
                    CreditTransaction.transaction_type == TransactionType.EXPIRY.value
                )
            )
        ).scalar_one()
        assert expiry_tx.amount == Decimal("-80")
        assert expiry_tx.new_balance == Decimal("0")

        rerun = await distributor.process_expiries(now=later)
        assert rerun["total_expired"] == 0
        assert rerun["credits_clawed_back"] == "0"

    @pytest.mark.asyncio
    async def test_expiry_for_removed_entity_skips_clawback(
        self, db, distributor, tenant_factory
    ):
        tenant, org = await tenant_factory()
        campaign = await distributor.create_campaign(_draft([tenant.id], total="50"))
        await distributor.distribute(campaign.id)
        org.is_active = False
        await db.commit()

        sweep = await distributor.process_expiries(now=campaign.expires_at + timedelta(days=1))

        assert sweep["processed_count"] == 1
        assert sweep["credits_clawed_back"] == "0"

    @pytest.mark.asyncio
    async def test_warnings_go_out_once_per_tenant(
        self, distributor, notifier, tenant_factory
    ):
        tenant, _ = await tenant_factory()
        campaign = await distributor.create_campaign(
            _draft(
                [tenant.id],
                total="90",
                expires_at=utcnow() + timedelta(days=3),
                allocation_mode="application_specific",
                target_applications=["crm", "hr"],
                send_notifications=False,
            )
        )
        await distributor.distribute(campaign.id)

        first = await distributor.send_expiry_warnings(7)
        second = await distributor.send_expiry_warnings(7)

        assert first["notifications_sent"] == 1
        assert first["total_expiring"] == 2
        assert second["notifications_sent"] == 0
        tenant_id, template, payload = notifier.send.await_args.args
        assert tenant_id == str(tenant.id)
        assert template == "seasonal_credits_expiring"
        assert payload["remaining_credits"] == "90"
        assert payload["days_until_expiry"] == 3

    @pytest.mark.asyncio
    async def test_extend_moves_allocations_and_resets_warning(
        self, distributor, tenant_factory
    ):
        tenant, _ = await tenant_factory()
        campaign = await distributor.create_campaign(
            _draft([tenant.id], expires_at=utcnow() + timedelta(days=2))
        )
        await distributor.distribute(campaign.id)
        await distributor.send_expiry_warnings(7)

        new_expiry = utcnow() + timedelta(days=60)
        result = await distributor.extend_expiry(campaign.id, new_expiry)

        assert result["allocations_updated"] == 1
        refreshed = await distributor.get_campaign(campaign.id)
        assert refreshed.warning_sent_at is None
        with pytest.raises(ValidationError, match="later than the current expiry"):
            await distributor.extend_expiry(campaign.id, utcnow() + timedelta(days=10))
        with pytest.raises(ValidationError, match="must be in the future"):
            await distributor.extend_expiry(campaign.id, utcnow() - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_expiry_stats_split_by_window(self, distributor, tenant_factory):
        tenant, org = await tenant_factory()
        other, _ = await tenant_factory("Other")
        soon = await distributor.create_campaign(
            _draft([tenant.id, other.id], total="180", expires_at=utcnow() + timedelta(days=3))
        )
        later = await distributor.create_campaign(
            _draft([tenant.id], total="40", expires_at=utcnow() + timedelta(days=20))
        )
        distant = await distributor.create_campaign(
            _draft([tenant.id], total="500", expires_at=utcnow() + timedelta(days=90))
        )
        for campaign in (soon, later, distant):
            await distributor.distribute(campaign.id)

        stats = await distributor.expiry_stats(tenant.id)

        assert stats["expiring_within_7_days"] == {"count": 1, "unused_credits": "90"}
        assert stats["expiring_within_30_days"] == {"count": 2, "unused_credits": "130"}
        by_entity = await distributor.expiry_stats(tenant.id, org.id)
        assert by_entity["expiring_within_30_days"]["count"] == 2
        assert (await distributor.expiry_stats(tenant.id, uuid4()))[
            "expiring_within_30_days"
        ] == {"count": 0, "unused_credits": "0"}
