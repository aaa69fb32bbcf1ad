"""
Consistency Auditor

Compares the credit ledger against the entity directory. A Credit row whose
entity no longer resolves (deleted, deactivated or moved to another tenant)
is an orphan. Orphans are only reported here unless an operator explicitly
asks for cleanup, since deleting a balance row drops its point-in-time value
without a compensating transaction. The transaction chain is left untouched.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.credit import Credit
from app.modules.ledger.domain.entity_directory import EntityDirectory
from app.modules.ledger.domain.ledger import CreditLedger
from app.shared.core.audit import AuditSink, default_audit_sink
from app.shared.core.exceptions import OrphanRecordError
from app.shared.core.money import format_amount

logger = structlog.get_logger()

ORPHAN_SAMPLE_SIZE = 10


def _credit_summary(credit: Credit) -> dict[str, Any]:
    return {
        "credit_id": str(credit.id),
        "entity_id": str(credit.entity_id),
        "available_credits": format_amount(credit.available_credits),
        "reserved_credits": format_amount(credit.reserved_credits),
        "is_active": credit.is_active,
    }


class ConsistencyAuditor:
    def __init__(
        self,
        db: AsyncSession,
        *,
        directory: Optional[EntityDirectory] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.db = db
        self.directory = directory or EntityDirectory(db)
        self.audit_sink = audit_sink or default_audit_sink

    async def _credits(self, tenant_id: UUID) -> list[Credit]:
        result = await self.db.execute(
            select(Credit)
            .where(Credit.tenant_id == tenant_id)
            .order_by(Credit.created_at.asc())
        )
        return list(result.scalars().all())

    async def detect_orphans(self, tenant_id: UUID) -> list[Credit]:
        """Credit rows whose entity does not resolve for the tenant."""
        valid_ids = await self.directory.active_entity_ids(tenant_id)
        return [c for c in await self._credits(tenant_id) if c.entity_id not in valid_ids]

    async def orphan_report(self, tenant_id: UUID) -> dict[str, Any]:
        credits = await self._credits(tenant_id)
        valid_ids = await self.directory.active_entity_ids(tenant_id)
        orphans = [c for c in credits if c.entity_id not in valid_ids]

        total = sum((Decimal(c.available_credits) for c in credits), Decimal("0"))
        orphaned = sum((Decimal(c.available_credits) for c in orphans), Decimal("0"))
        valid = total - orphaned
        return {
            "tenant_id": str(tenant_id),
            "total_credit_records": len(credits),
            "valid_credit_records": len(credits) - len(orphans),
            "orphaned_credit_records": len(orphans),
            "total_credits": format_amount(total),
            "valid_credits": format_amount(valid),
            "orphaned_credits": format_amount(orphaned),
            "discrepancy": format_amount(orphaned),
            "valid_entity_count": len(valid_ids),
            "orphans": [_credit_summary(c) for c in orphans[:ORPHAN_SAMPLE_SIZE]],
        }

    async def clean_orphans(
        self, tenant_id: UUID, *, initiated_by: Optional[str] = None
    ) -> dict[str, Any]:
        """Delete orphaned Credit rows. Operator-triggered only."""
        before = await self._credits(tenant_id)
        orphans = await self.detect_orphans(tenant_id)
        if not orphans:
            return {
                "tenant_id": str(tenant_id),
                "before_count": len(before),
                "after_count": len(before),
                "deleted_count": 0,
                "total_credits_cleaned": format_amount(Decimal("0")),
                "orphans": [],
            }

        summaries = [_credit_summary(c) for c in orphans]
        cleaned = sum((Decimal(c.available_credits) for c in orphans), Decimal("0"))
        result = await self.db.execute(
            delete(Credit)
            .where(
                Credit.tenant_id == tenant_id,
                Credit.id.in_([c.id for c in orphans]),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        deleted = result.rowcount
        after = len(before) - deleted

        logger.warning(
            "orphaned_credits_cleaned",
            tenant_id=str(tenant_id),
            deleted_count=deleted,
            total_credits_cleaned=format_amount(cleaned),
            initiated_by=initiated_by,
        )
        try:
            self.audit_sink.record(
                "orphaned_credits_cleaned",
                tenant_id=str(tenant_id),
                user_id=initiated_by,
                details={
                    "deleted_count": deleted,
                    "total_credits_cleaned": format_amount(cleaned),
                    "entity_ids": [s["entity_id"] for s in summaries],
                },
            )
        except Exception as audit_exc:
            logger.warning("orphan_cleanup_audit_log_failed", error=str(audit_exc))

        return {
            "tenant_id": str(tenant_id),
            "before_count": len(before),
            "after_count": after,
            "deleted_count": deleted,
            "total_credits_cleaned": format_amount(cleaned),
            "orphans": summaries,
        }

    async def verify_ledger(self, tenant_id: UUID, *, strict: bool = False) -> dict[str, Any]:
        """
        Replay every balance's transaction chain and report mismatches.

        With strict=True, orphans or broken chains raise OrphanRecordError
        instead of being returned.
        """
        ledger = CreditLedger(self.db, directory=self.directory)
        credits = await self._credits(tenant_id)
        valid_ids = await self.directory.active_entity_ids(tenant_id)

        mismatches = []
        for credit in credits:
            chain = await ledger.verify_chain(tenant_id, credit.entity_id)
            if not chain["consistent"]:
                mismatches.append(chain)
        orphan_ids = [str(c.entity_id) for c in credits if c.entity_id not in valid_ids]

        report = {
            "tenant_id": str(tenant_id),
            "balances_checked": len(credits),
            "consistent": not mismatches and not orphan_ids,
            "mismatches": mismatches,
            "orphaned_entity_ids": orphan_ids,
        }
        if not report["consistent"]:
            logger.warning(
                "ledger_consistency_issues",
                tenant_id=str(tenant_id),
                mismatches=len(mismatches),
                orphans=len(orphan_ids),
            )
            if strict:
                raise OrphanRecordError(
                    "Ledger inconsistencies detected", details=report
                )
        return report
