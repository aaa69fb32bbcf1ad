"""
Seasonal Campaign Distributor

Grants time-boxed promotional credits to many tenants and later claws back
whatever was not used.

Distribution walks the target tenants one at a time and commits each tenant
separately. A tenant that fails (no primary organization, ledger conflict,
database error) gets a `failed` allocation row and the batch moves on;
`distributed_count`/`failed_count` are checkpointed after every tenant so an
interrupted run shows how far it got.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.credit import TransactionType
from app.models.seasonal import (
    AllocationMode,
    AllocationStatus,
    CampaignCreditType,
    CampaignStatus,
    DistributionMethod,
    SeasonalCampaign,
    SeasonalCreditAllocation,
)
from app.models.tenant import Tenant
from app.modules.ledger.domain.ledger import CreditLedger
from app.shared.core.audit import AuditSink, default_audit_sink
from app.shared.core.config import get_settings
from app.shared.core.dates import as_utc, utcnow
from app.shared.core.exceptions import (
    CampaignNotFoundError,
    EntityNotFoundError,
    ValidationError,
)
from app.shared.core.money import format_amount, to_credits
from app.shared.core.notifications import NotificationDispatcher, Notifier
from app.shared.core.ops_metrics import CAMPAIGN_ALLOCATIONS_TOTAL, CREDITS_EXPIRED_TOTAL

logger = structlog.get_logger()

VALID_APPLICATIONS = ("crm", "hr", "affiliate", "system", "operations")
DEFAULT_NOTIFICATION_TEMPLATE = (
    "You've received {credit_amount} free credits from the {campaign_name} campaign!"
)
MAX_CAMPAIGN_NAME_LENGTH = 255


@dataclass
class CampaignDraft:
    name: str
    credit_type: str
    total_credits: Decimal
    expires_at: datetime
    target_all_tenants: bool = False
    target_tenant_ids: list[UUID] = field(default_factory=list)
    credits_per_tenant: Optional[Decimal] = None
    distribution_method: str = DistributionMethod.EQUAL.value
    allocation_mode: str = AllocationMode.PRIMARY_ORG.value
    target_applications: list[str] = field(default_factory=list)
    description: Optional[str] = None
    send_notifications: bool = True
    notification_template: Optional[str] = None


def validate_campaign(draft: CampaignDraft, now: Optional[datetime] = None) -> list[str]:
    """Every problem with a draft, empty when it is valid."""
    errors: list[str] = []
    now = now or utcnow()

    name = (draft.name or "").strip()
    if not name or len(name) > MAX_CAMPAIGN_NAME_LENGTH:
        errors.append("Campaign name must be between 1-255 characters")

    credit_types = [ct.value for ct in CampaignCreditType]
    if draft.credit_type not in credit_types:
        errors.append("Invalid credit type. Must be one of: " + ", ".join(credit_types))

    if draft.total_credits is None or to_credits(draft.total_credits) <= 0:
        errors.append("Total credits must be greater than 0")

    if draft.expires_at is None or as_utc(draft.expires_at) <= now:
        errors.append("Expiry date must be in the future")

    if not draft.target_all_tenants and not draft.target_tenant_ids:
        errors.append("Must either target all tenants or specify target tenant IDs")

    methods = [m.value for m in DistributionMethod]
    if draft.distribution_method not in methods:
        errors.append("Invalid distribution method. Must be one of: " + ", ".join(methods))
    elif draft.distribution_method == DistributionMethod.FIXED.value:
        if draft.credits_per_tenant is None or to_credits(draft.credits_per_tenant) <= 0:
            errors.append("credits_per_tenant must be greater than 0 for fixed distribution")

    modes = [m.value for m in AllocationMode]
    if draft.allocation_mode not in modes:
        errors.append("Invalid allocation mode. Must be one of: " + ", ".join(modes))
    elif draft.allocation_mode == AllocationMode.APPLICATION_SPECIFIC.value:
        if not draft.target_applications:
            errors.append(
                'target_applications is required when allocation_mode is "application_specific"'
            )
        invalid = [app for app in draft.target_applications if app not in VALID_APPLICATIONS]
        if invalid:
            errors.append(
                f"Invalid application codes: {', '.join(invalid)}. "
                f"Valid codes: {', '.join(VALID_APPLICATIONS)}"
            )
    return errors


def split_evenly(amount: Decimal, parts: int) -> list[Decimal]:
    """Split credits into `parts` shares that sum exactly to `amount`."""
    share = to_credits(amount / parts)
    shares = [share] * parts
    shares[-1] = amount - share * (parts - 1)
    return shares


class SeasonalDistributor:
    def __init__(
        self,
        db: AsyncSession,
        *,
        ledger: Optional[CreditLedger] = None,
        notifier: Optional[Notifier] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.db = db
        self.ledger = ledger or CreditLedger(db)
        self.directory = self.ledger.directory
        self.notifier = notifier or NotificationDispatcher()
        self.audit_sink = audit_sink or default_audit_sink

    async def create_campaign(
        self, draft: CampaignDraft, *, created_by: Optional[str] = None
    ) -> SeasonalCampaign:
        errors = validate_campaign(draft)
        if errors:
            raise ValidationError(", ".join(errors), details={"errors": errors})

        campaign = SeasonalCampaign(
            name=draft.name.strip(),
            description=draft.description,
            credit_type=draft.credit_type,
            total_credits=to_credits(draft.total_credits),
            credits_per_tenant=(
                to_credits(draft.credits_per_tenant)
                if draft.credits_per_tenant is not None
                else None
            ),
            distribution_method=draft.distribution_method,
            allocation_mode=draft.allocation_mode,
            target_applications=list(dict.fromkeys(draft.target_applications)),
            target_all_tenants=draft.target_all_tenants,
            target_tenant_ids=(
                []
                if draft.target_all_tenants
                else [str(tid) for tid in dict.fromkeys(draft.target_tenant_ids)]
            ),
            expires_at=as_utc(draft.expires_at),
            send_notifications=draft.send_notifications,
            notification_template=draft.notification_template,
            distribution_status=CampaignStatus.PENDING.value,
            distributed_count=0,
            failed_count=0,
            created_by=created_by,
        )
        self.db.add(campaign)
        await self.db.commit()
        logger.info(
            "seasonal_campaign_created",
            campaign_id=str(campaign.id),
            credit_type=campaign.credit_type,
            total_credits=format_amount(campaign.total_credits),
            target_all_tenants=campaign.target_all_tenants,
        )
        return campaign

    async def get_campaign(self, campaign_id: UUID) -> SeasonalCampaign:
        result = await self.db.execute(
            select(SeasonalCampaign).where(SeasonalCampaign.id == campaign_id)
        )
        campaign = result.scalar_one_or_none()
        if campaign is None:
            raise CampaignNotFoundError(
                "Campaign not found", details={"campaign_id": str(campaign_id)}
            )
        return campaign

    async def list_campaigns(
        self,
        *,
        status: Optional[str] = None,
        credit_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        page = max(page, 1)
        limit = max(limit, 1)
        conditions = []
        if status:
            conditions.append(SeasonalCampaign.distribution_status == status)
        if credit_type:
            conditions.append(SeasonalCampaign.credit_type == credit_type)

        total = (
            await self.db.execute(
                select(func.count()).select_from(SeasonalCampaign).where(*conditions)
            )
        ).scalar_one()
        result = await self.db.execute(
            select(SeasonalCampaign)
            .where(*conditions)
            .order_by(SeasonalCampaign.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {
            "items": list(result.scalars().all()),
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit,
        }

    # ------------------------------------------------------------------
    # distribution
    # ------------------------------------------------------------------

    async def distribute(
        self, campaign_id: UUID, *, initiated_by: Optional[str] = None
    ) -> dict[str, Any]:
        campaign = await self.get_campaign(campaign_id)
        if campaign.distribution_status != CampaignStatus.PENDING.value:
            raise ValidationError(
                f"Campaign already processed. Current status: {campaign.distribution_status}",
                code="campaign_already_processed",
                details={"campaign_id": str(campaign_id)},
            )

        tenant_ids = await self._target_tenants(campaign)
        per_tenant = self._per_tenant_amount(campaign, len(tenant_ids))

        campaign.distribution_status = CampaignStatus.PROCESSING.value
        await self.db.commit()
        logger.info(
            "seasonal_distribution_started",
            campaign_id=str(campaign_id),
            tenant_count=len(tenant_ids),
            credits_per_tenant=format_amount(per_tenant),
        )

        distributed = 0
        failed_tenants: list[dict[str, str]] = []
        for tenant_id in tenant_ids:
            try:
                entity_id = await self._allocate_tenant(
                    campaign, tenant_id, per_tenant, initiated_by
                )
            except Exception as exc:  # noqa: BLE001 - one tenant must not abort the batch
                await self.db.rollback()
                campaign = await self.get_campaign(campaign_id)
                error = getattr(exc, "message", None) or str(exc)
                logger.warning(
                    "seasonal_allocation_failed",
                    campaign_id=str(campaign_id),
                    tenant_id=str(tenant_id),
                    error=error,
                )
                await self._record_failure(campaign, tenant_id, error)
                failed_tenants.append({"tenant_id": str(tenant_id), "error": error})
                CAMPAIGN_ALLOCATIONS_TOTAL.labels(status="failed").inc()
            else:
                distributed += 1
                CAMPAIGN_ALLOCATIONS_TOTAL.labels(status="completed").inc()
                if campaign.send_notifications:
                    await self._notify_granted(campaign, tenant_id, entity_id, per_tenant)

            campaign.distributed_count = distributed
            campaign.failed_count = len(failed_tenants)
            await self.db.commit()

        if not failed_tenants:
            final_status = CampaignStatus.COMPLETED
        elif distributed == 0:
            final_status = CampaignStatus.FAILED
        else:
            final_status = CampaignStatus.PARTIAL_SUCCESS
        campaign.distribution_status = final_status.value
        campaign.distributed_at = utcnow()
        await self.db.commit()

        logger.info(
            "seasonal_distribution_finished",
            campaign_id=str(campaign_id),
            status=final_status.value,
            distributed_count=distributed,
            failed_count=len(failed_tenants),
        )
        try:
            self.audit_sink.record(
                "seasonal_campaign_distributed",
                tenant_id="system",
                user_id=initiated_by,
                details={
                    "campaign_id": str(campaign_id),
                    "status": final_status.value,
                    "distributed_count": distributed,
                    "failed_count": len(failed_tenants),
                },
            )
        except Exception as audit_exc:
            logger.warning("seasonal_audit_log_failed", error=str(audit_exc))

        return {
            "campaign_id": str(campaign_id),
            "status": final_status.value,
            "total_tenants": len(tenant_ids),
            "distributed_count": distributed,
            "failed_count": len(failed_tenants),
            "credits_per_tenant": format_amount(per_tenant),
            "failed_tenants": failed_tenants,
        }

    async def _target_tenants(self, campaign: SeasonalCampaign) -> list[UUID]:
        if campaign.target_all_tenants:
            result = await self.db.execute(
                select(Tenant.id)
                .where(Tenant.is_active.is_(True))
                .order_by(Tenant.created_at.asc(), Tenant.id.asc())
            )
            return list(result.scalars().all())
        return [UUID(str(tid)) for tid in campaign.target_tenant_ids or []]

    @staticmethod
    def _per_tenant_amount(campaign: SeasonalCampaign, tenant_count: int) -> Decimal:
        """
        equal: total split across tenants, truncated so the sum stays within total.
        fixed: credits_per_tenant, and the campaign total must cover every tenant.
        flat:  every tenant receives total_credits.
        """
        total = Decimal(campaign.total_credits)
        method = campaign.distribution_method
        if method == DistributionMethod.FIXED.value:
            per_tenant = Decimal(campaign.credits_per_tenant or 0)
            if per_tenant * tenant_count > total:
                raise ValidationError(
                    "credits_per_tenant exceeds the campaign total for the targeted tenants",
                    details={
                        "campaign_id": str(campaign.id),
                        "tenant_count": tenant_count,
                        "credits_per_tenant": format_amount(per_tenant),
                        "total_credits": format_amount(total),
                    },
                )
            return per_tenant
        if method == DistributionMethod.EQUAL.value:
            return to_credits(total / tenant_count) if tenant_count else Decimal("0")
        return total

    async def _allocate_tenant(
        self,
        campaign: SeasonalCampaign,
        tenant_id: UUID,
        amount: Decimal,
        initiated_by: Optional[str],
    ) -> UUID:
        if amount <= 0:
            raise ValidationError("Per-tenant credit amount rounds to zero")
        organization = await self.directory.find_primary_organization(tenant_id)
        if organization is None:
            raise EntityNotFoundError(
                f"No primary organization found for tenant {tenant_id}",
                details={"tenant_id": str(tenant_id)},
            )

        await self.ledger.apply_delta(
            tenant_id,
            organization.id,
            amount,
            TransactionType.SEASONAL_CAMPAIGN,
            f"seasonal_campaign:{campaign.id}",
            f"seasonal_campaign:{campaign.id}:{tenant_id}",
            description=f"Seasonal credits: {campaign.name}",
            initiated_by=initiated_by,
            commit=False,
        )

        # The entity balance receives the full amount; application rows share it.
        if campaign.allocation_mode == AllocationMode.APPLICATION_SPECIFIC.value:
            apps = list(campaign.target_applications)
            shares = dict(zip(apps, split_evenly(amount, len(apps))))
        else:
            shares = {None: amount}

        now = utcnow()
        for app_code, share in shares.items():
            self.db.add(
                SeasonalCreditAllocation(
                    campaign_id=campaign.id,
                    tenant_id=tenant_id,
                    entity_id=organization.id,
                    target_application=app_code,
                    allocated_credits=share,
                    used_credits=Decimal("0"),
                    distribution_status=AllocationStatus.COMPLETED.value,
                    is_active=True,
                    is_expired=False,
                    expires_at=campaign.expires_at,
                    distributed_at=now,
                )
            )
        await self.db.commit()
        logger.info(
            "seasonal_allocation_completed",
            campaign_id=str(campaign.id),
            tenant_id=str(tenant_id),
            entity_id=str(organization.id),
            amount=format_amount(amount),
            allocation_rows=len(shares),
        )
        return organization.id

    async def _record_failure(
        self, campaign: SeasonalCampaign, tenant_id: UUID, error: str
    ) -> None:
        self.db.add(
            SeasonalCreditAllocation(
                campaign_id=campaign.id,
                tenant_id=tenant_id,
                entity_id=None,
                allocated_credits=Decimal("0"),
                used_credits=Decimal("0"),
                distribution_status=AllocationStatus.FAILED.value,
                error_message=error[:2000],
                is_active=False,
                is_expired=False,
                expires_at=campaign.expires_at,
            )
        )
        await self.db.flush()

    async def _notify_granted(
        self,
        campaign: SeasonalCampaign,
        tenant_id: UUID,
        entity_id: UUID,
        amount: Decimal,
    ) -> None:
        template = campaign.notification_template or DEFAULT_NOTIFICATION_TEMPLATE
        message = template.replace("{credit_amount}", format_amount(amount)).replace(
            "{campaign_name}", campaign.name
        )
        try:
            await self.notifier.send(
                str(tenant_id),
                "seasonal_credits_granted",
                {
                    "campaign_id": str(campaign.id),
                    "campaign_name": campaign.name,
                    "entity_id": str(entity_id),
                    "credit_amount": format_amount(amount),
                    "expires_at": as_utc(campaign.expires_at).isoformat(),
                    "message": message,
                },
            )
        except Exception as exc:
            logger.warning(
                "seasonal_notification_failed",
                campaign_id=str(campaign.id),
                tenant_id=str(tenant_id),
                error=str(exc),
            )

    # ------------------------------------------------------------------
    # reporting
    # ------------------------------------------------------------------

    async def tenant_allocations(
        self, campaign_id: UUID, tenant_id: Optional[UUID] = None
    ) -> list[SeasonalCreditAllocation]:
        await self.get_campaign(campaign_id)
        stmt = select(SeasonalCreditAllocation).where(
            SeasonalCreditAllocation.campaign_id == campaign_id
        )
        if tenant_id is not None:
            stmt = stmt.where(SeasonalCreditAllocation.tenant_id == tenant_id)
        result = await self.db.execute(
            stmt.order_by(
                SeasonalCreditAllocation.created_at.asc(),
                SeasonalCreditAllocation.target_application.asc(),
            )
        )
        return list(result.scalars().all())

    async def distribution_status(self, campaign_id: UUID) -> dict[str, Any]:
        campaign = await self.get_campaign(campaign_id)
        allocations = await self.tenant_allocations(campaign_id)

        counts = {status.value: 0 for status in AllocationStatus}
        allocated = Decimal("0")
        used = Decimal("0")
        seen_tenants: set[UUID] = set()
        for allocation in allocations:
            counts[allocation.distribution_status] = counts.get(allocation.distribution_status, 0) + 1
            seen_tenants.add(allocation.tenant_id)
            if allocation.distribution_status == AllocationStatus.COMPLETED.value:
                allocated += Decimal(allocation.allocated_credits)
                used += Decimal(allocation.used_credits)

        targets = await self._target_tenants(campaign)
        pending_tenants = [str(tid) for tid in targets if tid not in seen_tenants]
        utilization = (used / allocated * 100).quantize(Decimal("0.01")) if allocated else Decimal("0")
        return {
            "campaign_id": str(campaign.id),
            "status": campaign.distribution_status,
            "distributed_count": campaign.distributed_count,
            "failed_count": campaign.failed_count,
            "total_targeted": len(targets),
            "allocations_by_status": counts,
            "total_credits_allocated": format_amount(allocated),
            "total_credits_used": format_amount(used),
            "utilization_rate": f"{utilization}%",
            "pending_tenants": pending_tenants,
        }

    async def expiring_allocations(
        self, days: int = 30, *, now: Optional[datetime] = None
    ) -> list[dict[str, Any]]:
        now = now or utcnow()
        horizon = now + timedelta(days=days)
        result = await self.db.execute(
            select(SeasonalCreditAllocation, SeasonalCampaign)
            .join(SeasonalCampaign, SeasonalCampaign.id == SeasonalCreditAllocation.campaign_id)
            .where(
                SeasonalCreditAllocation.is_active.is_(True),
                SeasonalCreditAllocation.is_expired.is_(False),
                SeasonalCreditAllocation.expires_at <= horizon,
                SeasonalCreditAllocation.expires_at >= now,
            )
            .order_by(SeasonalCreditAllocation.expires_at.asc())
        )
        expiring = []
        for allocation, campaign in result.all():
            seconds_left = (as_utc(allocation.expires_at) - now).total_seconds()
            expiring.append(
                {
                    "allocation": allocation,
                    "campaign": campaign,
                    "days_until_expiry": max(math.ceil(seconds_left / 86400), 0),
                }
            )
        return expiring

    async def expiry_stats(
        self,
        tenant_id: UUID,
        entity_id: Optional[UUID] = None,
        *,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Count and unused credits of a tenant's allocations expiring within 7 and 30 days."""
        now = now or utcnow()
        stmt = select(SeasonalCreditAllocation).where(
            SeasonalCreditAllocation.tenant_id == tenant_id,
            SeasonalCreditAllocation.distribution_status == AllocationStatus.COMPLETED.value,
            SeasonalCreditAllocation.is_active.is_(True),
            SeasonalCreditAllocation.is_expired.is_(False),
            SeasonalCreditAllocation.expires_at >= now,
            SeasonalCreditAllocation.expires_at <= now + timedelta(days=30),
        )
        if entity_id is not None:
            stmt = stmt.where(SeasonalCreditAllocation.entity_id == entity_id)
        allocations = list((await self.db.execute(stmt)).scalars().all())

        windows: dict[str, Any] = {}
        for label, days in (("expiring_within_7_days", 7), ("expiring_within_30_days", 30)):
            horizon = now + timedelta(days=days)
            window = [a for a in allocations if as_utc(a.expires_at) <= horizon]
            unused = sum(
                (
                    max(Decimal(a.allocated_credits) - Decimal(a.used_credits), Decimal("0"))
                    for a in window
                ),
                Decimal("0"),
            )
            windows[label] = {"count": len(window), "unused_credits": format_amount(unused)}
        return {
            "tenant_id": str(tenant_id),
            "entity_id": str(entity_id) if entity_id else None,
            **windows,
        }

    # ------------------------------------------------------------------
    # expiry
    # ------------------------------------------------------------------

    async def extend_expiry(
        self, campaign_id: UUID, new_expires_at: datetime
    ) -> dict[str, Any]:
        campaign = await self.get_campaign(campaign_id)
        new_expiry = as_utc(new_expires_at)
        old_expiry = as_utc(campaign.expires_at)
        if new_expiry <= utcnow():
            raise ValidationError("New expiry date must be in the future")
        if new_expiry <= old_expiry:
            raise ValidationError(
                "New expiry date must be later than the current expiry",
                details={"current_expires_at": old_expiry.isoformat()},
            )

        campaign.expires_at = new_expiry
        campaign.warning_sent_at = None
        result = await self.db.execute(
            update(SeasonalCreditAllocation)
            .where(
                SeasonalCreditAllocation.campaign_id == campaign_id,
                SeasonalCreditAllocation.is_expired.is_(False),
            )
            .values(expires_at=new_expiry)
            .execution_options(synchronize_session="evaluate")
        )
        await self.db.commit()
        logger.info(
            "seasonal_campaign_expiry_extended",
            campaign_id=str(campaign_id),
            old_expires_at=old_expiry.isoformat(),
            new_expires_at=new_expiry.isoformat(),
            allocations_updated=result.rowcount,
        )
        return {
            "campaign_id": str(campaign_id),
            "old_expires_at": old_expiry.isoformat(),
            "new_expires_at": new_expiry.isoformat(),
            "allocations_updated": result.rowcount,
        }

    async def send_expiry_warnings(
        self, days: Optional[int] = None, *, now: Optional[datetime] = None
    ) -> dict[str, Any]:
        """
        Warn each tenant once per campaign about credits expiring within `days`.

        A campaign is stamped with warning_sent_at after its tenants are
        notified; extending the expiry clears the stamp.
        """
        days = days if days is not None else get_settings().SEASONAL_EXPIRY_WARNING_DAYS
        expiring = await self.expiring_allocations(days, now=now)

        by_campaign: dict[UUID, dict[UUID, list[dict[str, Any]]]] = {}
        campaigns: dict[UUID, SeasonalCampaign] = {}
        for item in expiring:
            campaign = item["campaign"]
            if campaign.warning_sent_at is not None:
                continue
            campaigns[campaign.id] = campaign
            tenants = by_campaign.setdefault(campaign.id, {})
            tenants.setdefault(item["allocation"].tenant_id, []).append(item)

        sent = 0
        for campaign_id, tenants in by_campaign.items():
            campaign = campaigns[campaign_id]
            for tenant_id, items in tenants.items():
                remaining = sum(
                    (
                        Decimal(i["allocation"].allocated_credits)
                        - Decimal(i["allocation"].used_credits)
                        for i in items
                    ),
                    Decimal("0"),
                )
                try:
                    await self.notifier.send(
                        str(tenant_id),
                        "seasonal_credits_expiring",
                        {
                            "campaign_id": str(campaign_id),
                            "campaign_name": campaign.name,
                            "remaining_credits": format_amount(remaining),
                            "expires_at": as_utc(campaign.expires_at).isoformat(),
                            "days_until_expiry": min(i["days_until_expiry"] for i in items),
                        },
                    )
                except Exception as exc:
                    logger.warning(
                        "seasonal_expiry_warning_failed",
                        campaign_id=str(campaign_id),
                        tenant_id=str(tenant_id),
                        error=str(exc),
                    )
                    continue
                sent += 1
            campaign.warning_sent_at = now or utcnow()
        await self.db.commit()

        logger.info(
            "seasonal_expiry_warnings_sent",
            notifications_sent=sent,
            campaigns_warned=len(by_campaign),
            total_expiring=len(expiring),
        )
        return {
            "notifications_sent": sent,
            "campaigns_warned": len(by_campaign),
            "total_expiring": len(expiring),
        }

    async def process_expiries(self, *, now: Optional[datetime] = None) -> dict[str, Any]:
        """
        Expire due allocations and claw back their unused credits.

        Each allocation is expired and clawed back in its own commit. The
        clawback is clamped at zero and keyed on the allocation id, so a
        re-run never debits twice.
        """
        now = now or utcnow()
        result = await self.db.execute(
            select(SeasonalCreditAllocation.id)
            .where(
                SeasonalCreditAllocation.is_active.is_(True),
                SeasonalCreditAllocation.is_expired.is_(False),
                SeasonalCreditAllocation.expires_at <= now,
            )
            .order_by(SeasonalCreditAllocation.expires_at.asc())
        )
        allocation_ids = list(result.scalars().all())

        processed = 0
        failures: list[dict[str, str]] = []
        clawed_back = Decimal("0")
        for allocation_id in allocation_ids:
            try:
                clawed_back += await self._expire_allocation(allocation_id, now)
            except Exception as exc:  # noqa: BLE001 - sweep continues past a bad allocation
                await self.db.rollback()
                error = getattr(exc, "message", None) or str(exc)
                logger.warning(
                    "seasonal_expiry_failed",
                    allocation_id=str(allocation_id),
                    error=error,
                )
                failures.append({"allocation_id": str(allocation_id), "error": error})
                continue
            processed += 1

        if clawed_back > 0:
            CREDITS_EXPIRED_TOTAL.inc(float(clawed_back))
        logger.info(
            "seasonal_expiry_sweep_finished",
            processed_count=processed,
            failed_count=len(failures),
            credits_clawed_back=format_amount(clawed_back),
        )
        return {
            "processed_count": processed,
            "total_expired": len(allocation_ids),
            "failed_count": len(failures),
            "credits_clawed_back": format_amount(clawed_back),
            "failures": failures,
        }

    async def _expire_allocation(self, allocation_id: UUID, now: datetime) -> Decimal:
        result = await self.db.execute(
            select(SeasonalCreditAllocation).where(SeasonalCreditAllocation.id == allocation_id)
        )
        allocation = result.scalar_one()
        if allocation.is_expired:
            return Decimal("0")

        allocation.is_expired = True
        allocation.is_active = False
        allocation.expired_at = now

        unused = Decimal(allocation.allocated_credits) - Decimal(allocation.used_credits or 0)
        clawed_back = Decimal("0")
        if unused > 0 and allocation.entity_id is not None:
            entity = await self.directory.resolve(allocation.tenant_id, allocation.entity_id)
            if entity is None:
                logger.warning(
                    "seasonal_expiry_entity_missing",
                    allocation_id=str(allocation_id),
                    tenant_id=str(allocation.tenant_id),
                    entity_id=str(allocation.entity_id),
                )
            else:
                mutation = await self.ledger.apply_delta(
                    allocation.tenant_id,
                    allocation.entity_id,
                    -unused,
                    TransactionType.EXPIRY,
                    f"seasonal_expiry:{allocation.campaign_id}",
                    f"seasonal_expiry:{allocation.id}",
                    clamp_to_zero=True,
                    description="Unused seasonal credits expired",
                    initiated_by="system:seasonal_expiry",
                    commit=False,
                )
                clawed_back = -mutation.amount if mutation.applied else Decimal("0")

        await self.db.commit()
        logger.info(
            "seasonal_allocation_expired",
            allocation_id=str(allocation_id),
            tenant_id=str(allocation.tenant_id),
            unused=format_amount(unused),
            clawed_back=format_amount(clawed_back),
        )
        return clawed_back
