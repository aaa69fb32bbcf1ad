"""
Credit Ledger

One Credit row per (tenant, entity) and an append-only CreditTransaction log.
`apply_delta` and `transfer` are the only code paths that change a balance.
Each call reads the balance, writes the new balance and appends the transaction inside
a single savepoint, serialized per (tenant, entity) by:

- a process-local asyncio lock (same-worker concurrency),
- SELECT ... FOR UPDATE on the balance row (cross-worker on Postgres),
- a version check on the UPDATE plus a unique (tenant, entity, sequence)
  constraint on transactions, which rejects lost updates on backends that
  ignore row locks.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID
from weakref import WeakValueDictionary

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.credit import Credit, CreditTransaction, TransactionType
from app.modules.ledger.domain.entity_directory import EntityDirectory
from app.shared.core.audit import AuditSink, default_audit_sink
from app.shared.core.dates import utcnow
from app.shared.core.exceptions import (
    EntityNotFoundError,
    LedgerConflictError,
    NegativeBalanceError,
    ValidationError,
)
from app.shared.core.money import MAX_CREDITS, format_amount, to_credits
from app.shared.core.ops_metrics import LEDGER_MUTATIONS_TOTAL

logger = structlog.get_logger()

_key_locks: "WeakValueDictionary[tuple[UUID, UUID], asyncio.Lock]" = WeakValueDictionary()


def _lock_for(tenant_id: UUID, entity_id: UUID) -> asyncio.Lock:
    key = (tenant_id, entity_id)
    lock = _key_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _key_locks[key] = lock
    return lock


@dataclass(frozen=True)
class LedgerMutation:
    previous_balance: Decimal
    new_balance: Decimal
    amount: Decimal
    transaction_id: Optional[UUID]
    applied: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "previous_balance": format_amount(self.previous_balance),
            "new_balance": format_amount(self.new_balance),
            "amount": format_amount(self.amount),
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "applied": self.applied,
        }


@dataclass(frozen=True)
class TransferResult:
    debit: LedgerMutation
    credit: LedgerMutation

    @property
    def applied(self) -> bool:
        return self.debit.applied

    def as_dict(self) -> dict[str, Any]:
        return {
            "amount": format_amount(self.credit.amount),
            "applied": self.applied,
            "source": self.debit.as_dict(),
            "destination": self.credit.as_dict(),
        }


@dataclass
class TransactionFilters:
    tenant_id: Optional[UUID] = None
    entity_id: Optional[UUID] = None
    transaction_type: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None


class CreditLedger:
    def __init__(
        self,
        db: AsyncSession,
        directory: EntityDirectory | None = None,
        audit_sink: AuditSink | None = None,
    ):
        self.db = db
        self.directory = directory or EntityDirectory(db)
        self.audit_sink = audit_sink or default_audit_sink

    async def get_balance(
        self, tenant_id: UUID, entity_id: UUID, *, commit: bool = True
    ) -> Credit:
        """Return the balance row, creating a zero balance on first access."""
        await self.directory.require(tenant_id, entity_id)
        credit = await self._load_credit(tenant_id, entity_id)
        if credit is not None:
            return credit

        async with self.db.begin_nested():
            credit = await self._get_or_create_credit(tenant_id, entity_id, lock=False)
        if commit:
            await self.db.commit()
        return credit

    async def apply_delta(
        self,
        tenant_id: UUID,
        entity_id: UUID,
        amount: Decimal | int | str,
        transaction_type: TransactionType | str,
        operation_code: str,
        idempotency_key: Optional[str] = None,
        *,
        enforce_non_negative: Optional[bool] = None,
        clamp_to_zero: bool = False,
        description: Optional[str] = None,
        initiated_by: Optional[str] = None,
        commit: bool = True,
    ) -> LedgerMutation:
        """
        Apply a signed credit delta and append its transaction atomically.

        A repeated idempotency_key for the tenant is a no-op that returns the
        original mutation with applied=False. Consumption debits may not take
        the balance below zero; clawbacks pass clamp_to_zero=True so the debit
        shrinks to whatever balance is left.
        """
        delta = to_credits(amount)
        tx_type = TransactionType(transaction_type).value
        if delta == 0:
            raise ValidationError("Ledger delta must be non-zero")
        if not operation_code:
            raise ValidationError("operation_code is required")
        if enforce_non_negative is None:
            enforce_non_negative = tx_type == TransactionType.CONSUMPTION.value

        async with _lock_for(tenant_id, entity_id):
            try:
                async with self.db.begin_nested():
                    if idempotency_key:
                        existing = await self._find_by_idempotency_key(
                            tenant_id, idempotency_key
                        )
                        if existing is not None:
                            return self._duplicate(existing, tx_type)

                    await self.directory.require(tenant_id, entity_id)
                    credit = await self._get_or_create_credit(
                        tenant_id, entity_id, lock=True
                    )
                    mutation = await self._write(
                        credit,
                        delta,
                        tx_type,
                        operation_code,
                        idempotency_key,
                        enforce_non_negative=enforce_non_negative,
                        clamp_to_zero=clamp_to_zero,
                        description=description,
                        initiated_by=initiated_by,
                    )
            except IntegrityError as exc:
                # Another writer claimed the key or the sequence between our read and flush.
                if idempotency_key:
                    existing = await self._find_by_idempotency_key(
                        tenant_id, idempotency_key
                    )
                    if existing is not None:
                        return self._duplicate(existing, tx_type)
                LEDGER_MUTATIONS_TOTAL.labels(
                    transaction_type=tx_type, outcome="conflict"
                ).inc()
                raise LedgerConflictError(
                    "Concurrent ledger write detected; retry the operation",
                    details={"tenant_id": str(tenant_id), "entity_id": str(entity_id)},
                ) from exc
            except (NegativeBalanceError, EntityNotFoundError, LedgerConflictError):
                LEDGER_MUTATIONS_TOTAL.labels(
                    transaction_type=tx_type, outcome="rejected"
                ).inc()
                raise

            # Commit under the lock so the next writer reads the new balance.
            if commit:
                await self.db.commit()

        LEDGER_MUTATIONS_TOTAL.labels(transaction_type=tx_type, outcome="applied").inc()
        logger.info(
            "ledger_delta_applied",
            tenant_id=str(tenant_id),
            entity_id=str(entity_id),
            transaction_type=tx_type,
            operation_code=operation_code,
            amount=format_amount(mutation.amount),
            previous_balance=format_amount(mutation.previous_balance),
            new_balance=format_amount(mutation.new_balance),
        )
        try:
            self.audit_sink.record(
                "credit_ledger_mutation",
                tenant_id=str(tenant_id),
                user_id=initiated_by,
                details={
                    "entity_id": str(entity_id),
                    "transaction_id": str(mutation.transaction_id),
                    "operation_code": operation_code,
                    **mutation.as_dict(),
                },
            )
        except Exception as audit_exc:
            logger.warning("ledger_audit_log_failed", error=str(audit_exc))
        return mutation

    async def consume(
        self,
        tenant_id: UUID,
        entity_id: UUID,
        amount: Decimal | int | str,
        operation_code: str,
        idempotency_key: Optional[str] = None,
        *,
        initiated_by: Optional[str] = None,
    ) -> LedgerMutation:
        """Debit credits on behalf of a calling application."""
        required = to_credits(amount)
        if required <= 0:
            raise ValidationError("Consumption amount must be positive")
        return await self.apply_delta(
            tenant_id,
            entity_id,
            -required,
            TransactionType.CONSUMPTION,
            operation_code,
            idempotency_key,
            enforce_non_negative=True,
            description=f"Consumption: {operation_code}",
            initiated_by=initiated_by,
        )

    async def purchase(
        self,
        tenant_id: UUID,
        amount: Decimal | int | str,
        *,
        entity_id: Optional[UUID] = None,
        idempotency_key: Optional[str] = None,
        operation_code: str = "credit_purchase",
        description: Optional[str] = None,
        initiated_by: Optional[str] = None,
        commit: bool = True,
    ) -> LedgerMutation:
        """Credit a purchase, defaulting to the tenant's primary organization."""
        credits = to_credits(amount)
        if credits <= 0:
            raise ValidationError("Purchased credit amount must be positive")

        target = entity_id
        if target is None or await self.directory.resolve(tenant_id, target) is None:
            primary = await self.directory.find_primary_organization(tenant_id)
            if primary is None:
                raise EntityNotFoundError(
                    f"No target entity or primary organization for tenant {tenant_id}",
                    details={"tenant_id": str(tenant_id)},
                )
            if target is not None:
                logger.warning(
                    "credit_purchase_entity_fallback",
                    tenant_id=str(tenant_id),
                    requested_entity_id=str(target),
                    fallback_entity_id=str(primary.id),
                )
            target = primary.id

        return await self.apply_delta(
            tenant_id,
            target,
            credits,
            TransactionType.PURCHASE,
            operation_code,
            idempotency_key,
            description=description or f"Credit purchase of {format_amount(credits)}",
            initiated_by=initiated_by,
            commit=commit,
        )

    async def transfer(
        self,
        tenant_id: UUID,
        from_entity_id: UUID,
        to_entity_id: UUID,
        amount: Decimal | int | str,
        *,
        idempotency_key: Optional[str] = None,
        operation_code: str = "credit_transfer",
        description: Optional[str] = None,
        initiated_by: Optional[str] = None,
        commit: bool = True,
    ) -> TransferResult:
        """
        Move credits between two entities of the same tenant.

        Both legs are written in one savepoint, so either both land or neither
        does. The source may not go below zero. The legs store
        "<key>:out" and "<key>:in"; a repeated idempotency_key returns the
        original pair with applied=False.
        """
        credits = to_credits(amount)
        if credits <= 0:
            raise ValidationError("Transfer amount must be positive")
        if from_entity_id == to_entity_id:
            raise ValidationError("Cannot transfer credits to the same entity")
        if not operation_code:
            raise ValidationError("operation_code is required")

        tx_type = TransactionType.TRANSFER.value
        out_key = f"{idempotency_key}:out" if idempotency_key else None
        in_key = f"{idempotency_key}:in" if idempotency_key else None
        description = description or f"Transfer of {format_amount(credits)} credits"
        # Fixed lock order so opposing transfers cannot wait on each other.
        first, second = sorted((from_entity_id, to_entity_id), key=str)

        async with _lock_for(tenant_id, first), _lock_for(tenant_id, second):
            try:
                async with self.db.begin_nested():
                    if out_key:
                        existing = await self._find_transfer(tenant_id, out_key, in_key)
                        if existing is not None:
                            return existing

                    await self.directory.require(tenant_id, from_entity_id)
                    await self.directory.require(tenant_id, to_entity_id)
                    source = await self._get_or_create_credit(
                        tenant_id, from_entity_id, lock=True
                    )
                    destination = await self._get_or_create_credit(
                        tenant_id, to_entity_id, lock=True
                    )
                    debit = await self._write(
                        source,
                        -credits,
                        tx_type,
                        operation_code,
                        out_key,
                        enforce_non_negative=True,
                        clamp_to_zero=False,
                        description=description,
                        initiated_by=initiated_by,
                    )
                    credit = await self._write(
                        destination,
                        credits,
                        tx_type,
                        operation_code,
                        in_key,
                        enforce_non_negative=False,
                        clamp_to_zero=False,
                        description=description,
                        initiated_by=initiated_by,
                    )
            except IntegrityError as exc:
                if out_key:
                    existing = await self._find_transfer(tenant_id, out_key, in_key)
                    if existing is not None:
                        return existing
                LEDGER_MUTATIONS_TOTAL.labels(
                    transaction_type=tx_type, outcome="conflict"
                ).inc()
                raise LedgerConflictError(
                    "Concurrent ledger write detected; retry the operation",
                    details={"tenant_id": str(tenant_id)},
                ) from exc
            except (
                NegativeBalanceError,
                EntityNotFoundError,
                LedgerConflictError,
                ValidationError,
            ):
                LEDGER_MUTATIONS_TOTAL.labels(
                    transaction_type=tx_type, outcome="rejected"
                ).inc()
                raise

            if commit:
                await self.db.commit()

        result = TransferResult(debit=debit, credit=credit)
        LEDGER_MUTATIONS_TOTAL.labels(transaction_type=tx_type, outcome="applied").inc()
        logger.info(
            "ledger_transfer_applied",
            tenant_id=str(tenant_id),
            from_entity_id=str(from_entity_id),
            to_entity_id=str(to_entity_id),
            operation_code=operation_code,
            amount=format_amount(credits),
        )
        try:
            self.audit_sink.record(
                "credit_ledger_transfer",
                tenant_id=str(tenant_id),
                user_id=initiated_by,
                details={
                    "from_entity_id": str(from_entity_id),
                    "to_entity_id": str(to_entity_id),
                    "operation_code": operation_code,
                    **result.as_dict(),
                },
            )
        except Exception as audit_exc:
            logger.warning("ledger_audit_log_failed", error=str(audit_exc))
        return result

    async def transaction_history(
        self, tenant_id: UUID, entity_id: UUID
    ) -> list[CreditTransaction]:
        """Transactions for one balance in chain order."""
        result = await self.db.execute(
            select(CreditTransaction)
            .where(
                CreditTransaction.tenant_id == tenant_id,
                CreditTransaction.entity_id == entity_id,
            )
            .order_by(CreditTransaction.sequence.asc())
        )
        return list(result.scalars().all())

    async def list_transactions(
        self, filters: TransactionFilters, page: int = 1, limit: int = 50
    ) -> dict[str, Any]:
        page = max(page, 1)
        limit = max(limit, 1)
        conditions = []
        if filters.tenant_id:
            conditions.append(CreditTransaction.tenant_id == filters.tenant_id)
        if filters.entity_id:
            conditions.append(CreditTransaction.entity_id == filters.entity_id)
        if filters.transaction_type:
            conditions.append(
                CreditTransaction.transaction_type == filters.transaction_type
            )
        if filters.start_date:
            conditions.append(CreditTransaction.created_at >= filters.start_date)
        if filters.end_date:
            conditions.append(CreditTransaction.created_at <= filters.end_date)
        # Amount bounds compare magnitudes so debits and credits filter alike.
        if filters.min_amount is not None:
            conditions.append(func.abs(CreditTransaction.amount) >= filters.min_amount)
        if filters.max_amount is not None:
            conditions.append(func.abs(CreditTransaction.amount) <= filters.max_amount)

        total = (
            await self.db.execute(
                select(func.count()).select_from(CreditTransaction).where(*conditions)
            )
        ).scalar_one()
        result = await self.db.execute(
            select(CreditTransaction)
            .where(*conditions)
            .order_by(
                CreditTransaction.created_at.desc(), CreditTransaction.sequence.desc()
            )
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

    async def usage_summary(
        self,
        tenant_id: UUID,
        *,
        entity_id: Optional[UUID] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Consumption grouped by operation code, heaviest first."""
        conditions = [
            CreditTransaction.tenant_id == tenant_id,
            CreditTransaction.transaction_type == TransactionType.CONSUMPTION.value,
        ]
        if entity_id:
            conditions.append(CreditTransaction.entity_id == entity_id)
        if start_date:
            conditions.append(CreditTransaction.created_at >= start_date)
        if end_date:
            conditions.append(CreditTransaction.created_at <= end_date)

        rows = (
            await self.db.execute(
                select(
                    CreditTransaction.operation_code,
                    func.count(CreditTransaction.id),
                    func.sum(CreditTransaction.amount),
                )
                .where(*conditions)
                .group_by(CreditTransaction.operation_code)
            )
        ).all()
        # Consumption rows carry negative amounts.
        usage = sorted(
            ((code, count, -to_credits(total)) for code, count, total in rows),
            key=lambda row: (-row[2], row[0]),
        )
        return {
            "tenant_id": str(tenant_id),
            "entity_id": str(entity_id) if entity_id else None,
            "start_date": start_date.isoformat() if start_date else None,
            "end_date": end_date.isoformat() if end_date else None,
            "operation_count": sum(count for _, count, _ in usage),
            "total_credits_used": format_amount(
                sum((used for _, _, used in usage), Decimal("0"))
            ),
            "operations": [
                {
                    "operation_code": code,
                    "count": count,
                    "credits_used": format_amount(used),
                }
                for code, count, used in usage
            ],
        }

    async def credit_stats(self, tenant_id: UUID) -> dict[str, Any]:
        """Balance totals across a tenant's entities plus per-type transaction totals."""
        credits = (
            await self.db.execute(
                select(Credit).where(
                    Credit.tenant_id == tenant_id, Credit.is_active.is_(True)
                )
            )
        ).scalars().all()
        available = sum(
            (Decimal(credit.available_credits) for credit in credits), Decimal("0")
        )
        reserved = sum(
            (Decimal(credit.reserved_credits) for credit in credits), Decimal("0")
        )
        average = to_credits(available / len(credits)) if credits else Decimal("0")

        by_type = (
            await self.db.execute(
                select(
                    CreditTransaction.transaction_type,
                    func.count(CreditTransaction.id),
                    func.sum(CreditTransaction.amount),
                )
                .where(CreditTransaction.tenant_id == tenant_id)
                .group_by(CreditTransaction.transaction_type)
            )
        ).all()
        return {
            "tenant_id": str(tenant_id),
            "entity_count": len(credits),
            "entities_with_credits": sum(
                1 for credit in credits if credit.available_credits > 0
            ),
            "total_available": format_amount(available),
            "total_reserved": format_amount(reserved),
            "average_per_entity": format_amount(average),
            "transactions_by_type": {
                tx_type: {"count": count, "net_amount": format_amount(to_credits(total))}
                for tx_type, count, total in sorted(by_type, key=lambda row: row[0])
            },
        }

    async def verify_chain(self, tenant_id: UUID, entity_id: UUID) -> dict[str, Any]:
        """
        Replay the transaction chain for one balance.

        Reports the first link where previous_balance does not match the prior
        new_balance (or new != previous + amount), and whether the stored
        balance equals the chain's final balance.
        """
        transactions = await self.transaction_history(tenant_id, entity_id)
        credit = await self._load_credit(tenant_id, entity_id)
        running: Optional[Decimal] = None
        first_break: Optional[dict[str, Any]] = None

        for tx in transactions:
            previous = Decimal(tx.previous_balance)
            new = Decimal(tx.new_balance)
            linked = running is None or previous == running
            if first_break is None and (not linked or previous + Decimal(tx.amount) != new):
                first_break = {
                    "transaction_id": str(tx.id),
                    "sequence": tx.sequence,
                    "expected_previous_balance": format_amount(running),
                    "previous_balance": format_amount(previous),
                    "new_balance": format_amount(new),
                }
            running = new

        chain_balance = running if running is not None else Decimal("0")
        stored = Decimal(credit.available_credits) if credit is not None else None
        return {
            "tenant_id": str(tenant_id),
            "entity_id": str(entity_id),
            "transaction_count": len(transactions),
            "chain_balance": format_amount(chain_balance),
            "stored_balance": format_amount(stored) if stored is not None else None,
            "consistent": first_break is None
            and (stored is None or stored == chain_balance),
            "first_break": first_break,
        }

    async def _write(
        self,
        credit: Credit,
        delta: Decimal,
        tx_type: str,
        operation_code: str,
        idempotency_key: Optional[str],
        *,
        enforce_non_negative: bool,
        clamp_to_zero: bool,
        description: Optional[str],
        initiated_by: Optional[str],
    ) -> LedgerMutation:
        previous = Decimal(credit.available_credits)
        effective = delta
        if clamp_to_zero and previous + delta < 0:
            effective = -max(previous, Decimal("0"))
        new_balance = previous + effective

        if enforce_non_negative and new_balance < 0:
            raise NegativeBalanceError(
                "Insufficient credits",
                details={
                    "tenant_id": str(credit.tenant_id),
                    "entity_id": str(credit.entity_id),
                    "available": format_amount(previous),
                    "required": format_amount(-delta),
                },
            )

        if new_balance > MAX_CREDITS:
            raise ValidationError(
                "Balance would exceed the maximum credit amount",
                code="credit_limit_exceeded",
                details={
                    "entity_id": str(credit.entity_id),
                    "available": format_amount(previous),
                    "max": format_amount(MAX_CREDITS),
                },
            )

        current_version = credit.version
        now = utcnow()
        result = await self.db.execute(
            update(Credit)
            .where(Credit.id == credit.id, Credit.version == current_version)
            .values(
                available_credits=new_balance,
                version=current_version + 1,
                last_updated_at=now,
            )
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount != 1:
            raise LedgerConflictError(
                "Balance row changed during mutation",
                details={
                    "tenant_id": str(credit.tenant_id),
                    "entity_id": str(credit.entity_id),
                    "expected_version": current_version,
                },
            )

        transaction = CreditTransaction(
            tenant_id=credit.tenant_id,
            entity_id=credit.entity_id,
            transaction_type=tx_type,
            amount=effective,
            previous_balance=previous,
            new_balance=new_balance,
            operation_code=operation_code,
            idempotency_key=idempotency_key,
            sequence=current_version + 1,
            description=description,
            initiated_by=initiated_by,
            created_at=now,
        )
        self.db.add(transaction)
        await self.db.flush()

        return LedgerMutation(
            previous_balance=previous,
            new_balance=new_balance,
            amount=effective,
            transaction_id=transaction.id,
            applied=True,
        )

    async def _load_credit(
        self, tenant_id: UUID, entity_id: UUID, *, lock: bool = False
    ) -> Credit | None:
        stmt = select(Credit).where(
            Credit.tenant_id == tenant_id, Credit.entity_id == entity_id
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_create_credit(
        self, tenant_id: UUID, entity_id: UUID, *, lock: bool
    ) -> Credit:
        credit = await self._load_credit(tenant_id, entity_id, lock=lock)
        if credit is not None:
            return credit

        # A balance recreated after orphan cleanup continues the old sequence.
        last_sequence = (
            await self.db.execute(
                select(func.max(CreditTransaction.sequence)).where(
                    CreditTransaction.tenant_id == tenant_id,
                    CreditTransaction.entity_id == entity_id,
                )
            )
        ).scalar_one_or_none()
        credit = Credit(
            tenant_id=tenant_id,
            entity_id=entity_id,
            available_credits=Decimal("0"),
            reserved_credits=Decimal("0"),
            version=last_sequence or 0,
        )
        self.db.add(credit)
        await self.db.flush()
        logger.info(
            "credit_balance_created",
            tenant_id=str(tenant_id),
            entity_id=str(entity_id),
        )
        return credit

    async def _find_by_idempotency_key(
        self, tenant_id: UUID, idempotency_key: str
    ) -> CreditTransaction | None:
        result = await self.db.execute(
            select(CreditTransaction).where(
                CreditTransaction.tenant_id == tenant_id,
                CreditTransaction.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    async def _find_transfer(
        self, tenant_id: UUID, out_key: str, in_key: Optional[str]
    ) -> TransferResult | None:
        debit = await self._find_by_idempotency_key(tenant_id, out_key)
        credit = await self._find_by_idempotency_key(tenant_id, in_key or "")
        if debit is None or credit is None:
            return None
        tx_type = TransactionType.TRANSFER.value
        return TransferResult(
            debit=self._duplicate(debit, tx_type),
            credit=self._duplicate(credit, tx_type),
        )

    def _duplicate(self, existing: CreditTransaction, tx_type: str) -> LedgerMutation:
        LEDGER_MUTATIONS_TOTAL.labels(transaction_type=tx_type, outcome="duplicate").inc()
        logger.info(
            "ledger_delta_duplicate_skipped",
            tenant_id=str(existing.tenant_id),
            entity_id=str(existing.entity_id),
            idempotency_key=existing.idempotency_key,
            transaction_id=str(existing.id),
        )
        return LedgerMutation(
            previous_balance=Decimal(existing.previous_balance),
            new_balance=Decimal(existing.new_balance),
            amount=Decimal(existing.amount),
            transaction_id=existing.id,
            applied=False,
        )
