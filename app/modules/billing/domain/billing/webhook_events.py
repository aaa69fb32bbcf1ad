"""
Webhook delivery log.

Every gateway event is recorded once per (provider, event id) before its
handler runs. A processed event is never handled again. While one worker
holds the processing lease other deliveries are turned away; failed or
abandoned rows are retried on redelivery.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.modules.billing.domain.billing.gateway import NormalizedEvent
from app.shared.core.config import get_settings
from app.shared.core.dates import as_utc, utcnow

logger = structlog.get_logger()

WEBHOOK_MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class Claim:
    """Result of WebhookEventLog.claim; record_id is None when the delivery must not run."""

    record_id: Optional[UUID]
    skip_reason: Optional[str] = None


class WebhookEventLog:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, provider: str, event_id: str) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider, WebhookEvent.event_id == event_id
            )
        )
        return result.scalar_one_or_none()

    async def claim(self, event: NormalizedEvent) -> Claim:
        """
        Take the processing lease for an event and commit it.

        A processed event, or one another worker leased less than
        WEBHOOK_PROCESSING_LEASE_SECONDS ago, yields no record id. Failed and
        abandoned rows are re-leased with a compare-and-set on `attempts`, so
        only one concurrent delivery wins.
        """
        now = utcnow()
        record = await self.get(event.provider, event.id)
        if record is None:
            try:
                async with self.db.begin_nested():
                    record = WebhookEvent(
                        provider=event.provider,
                        event_id=event.id,
                        event_type=event.type.value,
                        status=WebhookEventStatus.PROCESSING.value,
                        attempts=1,
                        claimed_at=now,
                        outcome={},
                    )
                    self.db.add(record)
                    await self.db.flush()
            except IntegrityError:
                # A concurrent delivery inserted the row first.
                record = await self.get(event.provider, event.id)
                if record is None:
                    raise
            else:
                record_id = record.id
                await self.db.commit()
                return Claim(record_id)

        if record.status == WebhookEventStatus.PROCESSED.value:
            logger.info(
                "webhook_duplicate_ignored",
                provider=event.provider,
                event_id=event.id,
                event_type=event.type.value,
            )
            return Claim(None, "already_processed")

        if record.status == WebhookEventStatus.PROCESSING.value and self._leased(record, now):
            return self._in_progress(event, record.attempts)

        observed_attempts = record.attempts or 0
        record_id = record.id
        result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == record_id,
                WebhookEvent.attempts == observed_attempts,
            )
            .values(
                status=WebhookEventStatus.PROCESSING.value,
                attempts=observed_attempts + 1,
                claimed_at=now,
            )
            .execution_options(synchronize_session="evaluate")
        )
        await self.db.commit()
        if result.rowcount != 1:
            return self._in_progress(event, observed_attempts)
        return Claim(record_id)

    def _leased(self, record: WebhookEvent, now: datetime) -> bool:
        if record.claimed_at is None:
            return False
        lease = timedelta(seconds=get_settings().WEBHOOK_PROCESSING_LEASE_SECONDS)
        return as_utc(record.claimed_at) + lease > now

    @staticmethod
    def _in_progress(event: NormalizedEvent, attempts: int) -> Claim:
        logger.info(
            "webhook_delivery_in_progress",
            provider=event.provider,
            event_id=event.id,
            attempts=attempts,
        )
        return Claim(None, "in_progress")

    async def mark_processed(self, record_id: UUID, outcome: dict[str, Any]) -> None:
        record = await self._load(record_id)
        record.status = WebhookEventStatus.PROCESSED.value
        record.outcome = outcome
        record.last_error = None
        record.processed_at = utcnow()
        await self.db.commit()

    async def mark_failed(
        self, record_id: UUID, error: str, outcome: Optional[dict[str, Any]] = None
    ) -> None:
        """Called after the handler's work was rolled back."""
        record = await self._load(record_id)
        if record.status == WebhookEventStatus.PROCESSED.value:
            logger.warning(
                "webhook_failure_after_processed_ignored",
                provider=record.provider,
                event_id=record.event_id,
            )
            return
        record.status = WebhookEventStatus.FAILED.value
        record.last_error = error[:WEBHOOK_MAX_ERROR_LENGTH]
        record.outcome = outcome or {}
        await self.db.commit()
        logger.warning(
            "webhook_event_failed",
            provider=record.provider,
            event_id=record.event_id,
            attempts=record.attempts,
        )

    async def _load(self, record_id: UUID) -> WebhookEvent:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.id == record_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
