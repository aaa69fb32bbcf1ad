"""Payment rows keyed by gateway identifiers. Redelivery updates, never duplicates."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import Payment, PaymentStatus, PaymentType
from app.shared.core.money import format_amount

logger = structlog.get_logger()

_SETTLED_STATUSES = {
    PaymentStatus.REFUNDED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.DISPUTED.value,
}
_OPEN_STATUSES = {PaymentStatus.PENDING.value, PaymentStatus.SUCCEEDED.value}


class PaymentRecorder:
    def __init__(self, db: AsyncSession, currency: str = "USD"):
        self.db = db
        self.currency = currency

    async def by_intent(self, payment_intent_id: str) -> Payment | None:
        result = await self.db.execute(
            select(Payment).where(Payment.payment_intent_id == payment_intent_id)
        )
        return result.scalar_one_or_none()

    async def by_refund_id(self, refund_id: str) -> Payment | None:
        result = await self.db.execute(
            select(Payment).where(Payment.refund_id == refund_id)
        )
        return result.scalar_one_or_none()

    async def by_charge(self, charge_id: str) -> Payment | None:
        """The original (non-refund) payment for a gateway charge id."""
        result = await self.db.execute(
            select(Payment)
            .where(
                or_(Payment.charge_id == charge_id, Payment.payment_intent_id == charge_id),
                Payment.payment_type != PaymentType.REFUND.value,
            )
            .order_by(Payment.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def by_invoice(self, invoice_id: str, status: str) -> Payment | None:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.invoice_id == invoice_id, Payment.status == status)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        *,
        tenant_id: UUID,
        payment_intent_id: Optional[str],
        amount: Decimal,
        status: PaymentStatus | str,
        payment_type: PaymentType | str,
        currency: Optional[str] = None,
        subscription_id: Optional[UUID] = None,
        invoice_id: Optional[str] = None,
        charge_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        paid_at: Any = None,
    ) -> tuple[Payment, bool]:
        """
        Insert or update the Payment for a payment intent.

        Without an intent id the invoice id and status identify the row.
        Returns (payment, created). Existing details are merged, not replaced.
        """
        status_value = PaymentStatus(status).value
        existing: Payment | None = None
        if payment_intent_id:
            existing = await self.by_intent(payment_intent_id)
        elif invoice_id:
            existing = await self.by_invoice(invoice_id, status_value)

        fields: dict[str, Any] = {
            "tenant_id": tenant_id,
            "amount": amount,
            "status": status_value,
            "payment_type": PaymentType(payment_type).value,
            "currency": (currency or self.currency).upper(),
        }
        optional = {
            "subscription_id": subscription_id,
            "invoice_id": invoice_id,
            "charge_id": charge_id,
            "paid_at": paid_at,
        }
        fields.update({key: value for key, value in optional.items() if value is not None})

        if existing is not None:
            if existing.status in _SETTLED_STATUSES and status_value in _OPEN_STATUSES:
                # Late success/pending deliveries must not undo a refund or dispute.
                fields["status"] = existing.status
            self._apply(existing, fields, details)
            await self.db.flush()
            logger.info(
                "payment_record_updated",
                payment_id=str(existing.id),
                payment_intent_id=payment_intent_id,
                status=status_value,
            )
            return existing, False

        try:
            async with self.db.begin_nested():
                payment = Payment(
                    payment_intent_id=payment_intent_id,
                    amount_refunded=Decimal("0"),
                    details=dict(details or {}),
                    **fields,
                )
                self.db.add(payment)
                await self.db.flush()
        except IntegrityError:
            if not payment_intent_id:
                raise
            # A concurrent delivery inserted the intent first.
            existing = await self.by_intent(payment_intent_id)
            if existing is None:
                raise
            self._apply(existing, fields, details)
            await self.db.flush()
            return existing, False

        logger.info(
            "payment_record_created",
            payment_id=str(payment.id),
            payment_intent_id=payment_intent_id,
            status=status_value,
            payment_type=fields["payment_type"],
        )
        return payment, True

    async def payment_stats(self, tenant_id: UUID) -> dict[str, Any]:
        """Payment counts by status, plus collected, refunded and disputed totals."""
        rows = (
            await self.db.execute(
                select(
                    Payment.status,
                    func.count(Payment.id),
                    func.sum(Payment.amount),
                    func.sum(Payment.amount_refunded),
                )
                .where(
                    Payment.tenant_id == tenant_id,
                    Payment.payment_type != PaymentType.REFUND.value,
                )
                .group_by(Payment.status)
            )
        ).all()
        by_status = {status.value: 0 for status in PaymentStatus}
        collected = Decimal("0")
        refunded = Decimal("0")
        disputed = Decimal("0")
        for status, count, amount, amount_refunded in rows:
            by_status[status] = count
            amount = Decimal(amount or 0)
            refunded += Decimal(amount_refunded or 0)
            if status == PaymentStatus.DISPUTED.value:
                disputed += amount
            elif status not in (PaymentStatus.FAILED.value, PaymentStatus.PENDING.value):
                collected += amount
        return {
            "tenant_id": str(tenant_id),
            "payment_count": sum(by_status.values()),
            "by_status": by_status,
            "dispute_count": by_status[PaymentStatus.DISPUTED.value],
            "total_collected": format_amount(collected),
            "total_refunded": format_amount(refunded),
            "total_disputed": format_amount(disputed),
        }

    @staticmethod
    def _apply(
        payment: Payment, fields: dict[str, Any], details: Optional[dict[str, Any]]
    ) -> None:
        for key, value in fields.items():
            setattr(payment, key, value)
        if details:
            payment.details = {**(payment.details or {}), **details}
