"""
Webhook Event Processor

Dispatches verified, normalized gateway events to one handler per
WebhookEventType and reports a structured outcome instead of raising on
benign conditions:

    {"processed": True, "event_type": ..., "skipped": True, "reason": ...}

Each event is claimed in the webhook log before its handler runs. The
handler's writes and the "processed" mark are committed together, so a crash
mid-handler leaves the event `failed`, retried on the next delivery, or
`processing`, retried once its lease lapses. Ledger writes inside handlers
carry idempotency keys derived from gateway ids, which keeps replays from
double-crediting.
"""

from __future__ import annotations

import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import (
    Payment,
    PaymentStatus,
    PaymentType,
    Subscription,
    SubscriptionStatus,
)
from app.models.credit import CreditTransaction, TransactionType
from app.models.tenant import Tenant, User
from app.modules.billing.domain.billing.gateway import (
    ChargeDisputed,
    ChargeSucceeded,
    CheckoutCompleted,
    InvoicePayment,
    InvoicePaymentPaid,
    NormalizedEvent,
    PaymentGateway,
    RefundCreated,
    SubscriptionChange,
    WebhookEventType,
)
from app.modules.billing.domain.billing.payment_records import PaymentRecorder
from app.modules.billing.domain.billing.subscription_state import (
    SubscriptionStateMachine,
    normalize_status,
)
from app.modules.billing.domain.billing.webhook_events import WebhookEventLog
from app.modules.ledger.domain.ledger import CreditLedger
from app.shared.core.config import get_settings
from app.shared.core.dates import utcnow
from app.shared.core.exceptions import (
    CreditlineException,
    GatewayError,
    ReconciliationDriftError,
)
from app.shared.core.money import format_amount, to_credits
from app.shared.core.notifications import NotificationDispatcher, Notifier
from app.shared.core.ops_metrics import WEBHOOK_EVENTS_TOTAL, WEBHOOK_PROCESSING_SECONDS
from app.shared.core.pricing import get_plan_credits, normalize_plan
from app.shared.core.tracing import get_tracer

logger = structlog.get_logger()

SYSTEM_ACTOR = "system:billing_webhook"

_HANDLER_NAMES: dict[WebhookEventType, str] = {
    WebhookEventType.CHECKOUT_COMPLETED: "_handle_checkout_completed",
    WebhookEventType.PAYMENT_SUCCEEDED: "_handle_payment_succeeded",
    WebhookEventType.INVOICE_PAYMENT_PAID: "_handle_invoice_payment_paid",
    WebhookEventType.PAYMENT_FAILED: "_handle_payment_failed",
    WebhookEventType.SUBSCRIPTION_CREATED: "_handle_subscription_created",
    WebhookEventType.SUBSCRIPTION_UPDATED: "_handle_subscription_updated",
    WebhookEventType.SUBSCRIPTION_DELETED: "_handle_subscription_deleted",
    WebhookEventType.CHARGE_DISPUTED: "_handle_charge_disputed",
    WebhookEventType.CHARGE_SUCCEEDED: "_handle_charge_succeeded",
    WebhookEventType.REFUND_CREATED: "_handle_refund_created",
}

_REFUND_STATUS = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "pending": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "failed": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}


def _skipped(reason: str, **extra: Any) -> dict[str, Any]:
    return {"skipped": True, "reason": reason, **extra}


def _parse_uuid(value: Any) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        logger.warning("webhook_invalid_uuid_in_metadata", value=str(value))
        return None


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


class WebhookProcessor:
    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        *,
        ledger: Optional[CreditLedger] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.ledger = ledger or CreditLedger(db)
        self.directory = self.ledger.directory
        self.subscriptions = SubscriptionStateMachine(db)
        self.payments = PaymentRecorder(db, currency=get_settings().DEFAULT_CURRENCY)
        self.events = WebhookEventLog(db)
        self.notifier = notifier or NotificationDispatcher()
        self._outbox: list[tuple[str, str, dict[str, Any]]] = []
        self._handlers: dict[
            WebhookEventType, Callable[[NormalizedEvent], Awaitable[dict[str, Any]]]
        ] = {event_type: getattr(self, name) for event_type, name in _HANDLER_NAMES.items()}

    async def handle(
        self, raw_body: bytes, signature: str, secret: Optional[str] = None
    ) -> dict[str, Any]:
        """Verify a raw delivery and process it. Signature failures raise."""
        event = await self.gateway.verify_webhook(raw_body, signature, secret)
        logger.info(
            "webhook_received",
            provider=event.provider,
            event_id=event.id,
            event_type=event.type.value,
        )
        return await self.process(event)

    async def process(self, event: NormalizedEvent) -> dict[str, Any]:
        base = {
            "processed": True,
            "event_type": event.type.value,
            "provider": event.provider,
            "event_id": event.id,
        }
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(
                "webhook_unhandled_event_type",
                provider=event.provider,
                raw_type=event.raw.get("type") or event.raw.get("event"),
            )
            self._count(event, "unhandled")
            return {**base, **_skipped("unhandled_event_type")}

        claim = await self.events.claim(event)
        if claim.record_id is None:
            if claim.skip_reason == "in_progress":
                # Unprocessed outcomes are answered 409.
                self._count(event, "in_progress")
                return {**base, "processed": False, **_skipped("in_progress")}
            self._count(event, "duplicate")
            return {**base, **_skipped("already_processed")}
        record_id = claim.record_id

        started = time.perf_counter()
        tracer = get_tracer(__name__)
        with tracer.start_as_current_span("webhook.process") as span:
            span.set_attribute("webhook.provider", event.provider)
            span.set_attribute("webhook.event_type", event.type.value)
            try:
                result = await handler(event)
            except ReconciliationDriftError as exc:
                await self.db.rollback()
                self._outbox.clear()
                logger.error(
                    "webhook_reconciliation_drift",
                    provider=event.provider,
                    event_id=event.id,
                    event_type=event.type.value,
                    lookup_chain=exc.details.get("lookup_chain"),
                    subscription_id=exc.details.get("subscription_id"),
                    customer_id=exc.details.get("customer_id"),
                )
                outcome = {
                    **base,
                    "processed": False,
                    "reason": "reconciliation_drift",
                    "details": exc.details,
                }
                await self.events.mark_failed(record_id, exc.message, outcome)
                self._count(event, "drift")
                return outcome
            except Exception as exc:
                await self.db.rollback()
                self._outbox.clear()
                span.record_exception(exc)
                logger.error(
                    "webhook_processing_failed",
                    provider=event.provider,
                    event_id=event.id,
                    event_type=event.type.value,
                    error=str(exc),
                    exc_info=not isinstance(exc, CreditlineException),
                )
                await self.events.mark_failed(record_id, str(exc))
                self._count(event, "failed")
                raise
            finally:
                WEBHOOK_PROCESSING_SECONDS.labels(provider=event.provider).observe(
                    time.perf_counter() - started
                )

        outcome = {**base, **result}
        await self.events.mark_processed(record_id, outcome)
        self._count(event, "skipped" if outcome.get("skipped") else "processed")
        await self._flush_outbox()
        return outcome

    # ------------------------------------------------------------------
    # checkout.completed
    # ------------------------------------------------------------------

    async def _handle_checkout_completed(self, event: NormalizedEvent) -> dict[str, Any]:
        session: CheckoutCompleted = event.data  # type: ignore[assignment]
        meta = session.metadata
        tenant_id = _parse_uuid(meta.get("tenantId") or meta.get("tenant_id"))
        if tenant_id is None:
            logger.warning("checkout_missing_tenant_id", session_id=session.session_id)
            return _skipped("missing_tenant_id")

        tenant = await self.db.get(Tenant, tenant_id)
        if tenant is None:
            logger.warning("checkout_unknown_tenant", tenant_id=str(tenant_id))
            return _skipped("unknown_tenant", tenant_id=str(tenant_id))

        credit_amount = meta.get("creditAmount") or meta.get("credit_amount")
        if credit_amount:
            return await self._credit_purchase(event, session, tenant, credit_amount)
        return await self._subscription_checkout(event, session, tenant)

    async def _credit_purchase(
        self,
        event: NormalizedEvent,
        session: CheckoutCompleted,
        tenant: Tenant,
        credit_amount: Any,
    ) -> dict[str, Any]:
        meta = session.metadata
        try:
            credits = to_credits(credit_amount)
        except ValueError:
            logger.warning(
                "credit_purchase_invalid_amount",
                tenant_id=str(tenant.id),
                credit_amount=str(credit_amount),
            )
            return _skipped("invalid_credit_amount")
        if credits <= 0:
            return _skipped("invalid_credit_amount")

        reference = session.session_id or session.payment_intent_id or event.id
        mutation = await self.ledger.purchase(
            tenant.id,
            credits,
            entity_id=_parse_uuid(meta.get("entityId") or meta.get("entity_id")),
            idempotency_key=f"credit_purchase:{reference}",
            operation_code=f"credit_purchase:{event.provider}",
            description=f"Purchased {format_amount(credits)} credits",
            initiated_by=meta.get("userId") or SYSTEM_ACTOR,
            commit=False,
        )
        credit_tx = (
            await self.db.get(CreditTransaction, mutation.transaction_id)
            if mutation.transaction_id
            else None
        )
        entity_id = str(credit_tx.entity_id) if credit_tx is not None else None

        paid = session.payment_status == "paid"
        payment, _ = await self.payments.upsert(
            tenant_id=tenant.id,
            payment_intent_id=session.payment_intent_id or session.session_id,
            amount=session.amount_total,
            currency=session.currency,
            status=PaymentStatus.SUCCEEDED if paid else PaymentStatus.PENDING,
            payment_type=PaymentType.CREDIT_PURCHASE,
            details={
                "checkout_session_id": session.session_id,
                "credit_amount": format_amount(credits),
                "entity_id": entity_id,
                "credit_transaction_id": str(mutation.transaction_id),
                "provider": event.provider,
            },
            paid_at=utcnow() if paid else None,
        )
        if session.customer_id and not tenant.customer_id:
            tenant.customer_id = session.customer_id

        self._notify(
            tenant.id,
            "credit_purchase_confirmation",
            {"credits": format_amount(credits), "amount": format_amount(session.amount_total)},
        )
        return {
            "tenant_id": str(tenant.id),
            "payment_id": str(payment.id),
            "credits": mutation.as_dict(),
        }

    async def _subscription_checkout(
        self, event: NormalizedEvent, session: CheckoutCompleted, tenant: Tenant
    ) -> dict[str, Any]:
        meta = session.metadata
        plan = normalize_plan(meta.get("planId") or meta.get("packageId") or meta.get("plan"))
        if plan is None:
            logger.warning("checkout_missing_plan", tenant_id=str(tenant.id))
            return _skipped("missing_plan_id")

        billing_cycle = str(meta.get("billingCycle") or meta.get("billing_cycle") or "yearly").lower()
        subscription, created = await self.subscriptions.get_or_create(tenant.id)
        subscription.billing_cycle = billing_cycle
        if session.customer_id:
            subscription.customer_id = session.customer_id
            tenant.customer_id = session.customer_id
        if session.subscription_id:
            subscription.external_subscription_id = session.subscription_id
        now = utcnow()
        subscription.current_period_start = now
        subscription.current_period_end = now + timedelta(
            days=365 if billing_cycle == "yearly" else 30
        )

        paid = session.payment_status == "paid"
        payment, _ = await self.payments.upsert(
            tenant_id=tenant.id,
            subscription_id=subscription.id,
            payment_intent_id=session.payment_intent_id or session.session_id,
            amount=session.amount_total,
            currency=session.currency,
            status=PaymentStatus.SUCCEEDED if paid else PaymentStatus.PENDING,
            payment_type=PaymentType.SUBSCRIPTION,
            details={
                "checkout_session_id": session.session_id,
                "plan": plan.value,
                "billing_cycle": billing_cycle,
                "provider": event.provider,
            },
            paid_at=now if paid else None,
        )
        if paid:
            subscription.last_payment_at = now

        plan_credits = await self._allocate_plan_credits(tenant.id, plan.value, session.session_id)
        await self.subscriptions.transition(
            subscription,
            SubscriptionStatus.ACTIVE,
            plan=plan.value,
            source=f"{event.provider}:{event.type.value}",
            strict=False,
        )

        self._notify(
            tenant.id,
            "subscription_confirmation",
            {"plan": plan.value, "billing_cycle": billing_cycle},
        )
        return {
            "tenant_id": str(tenant.id),
            "subscription_id": str(subscription.id),
            "subscription_created": created,
            "payment_id": str(payment.id),
            "plan": plan.value,
            "plan_credits": plan_credits,
        }

    async def _allocate_plan_credits(
        self, tenant_id: UUID, plan: str, session_id: str
    ) -> Optional[dict[str, Any]]:
        credits = get_plan_credits(plan)
        if credits <= 0:
            return None
        organization = await self.directory.find_primary_organization(tenant_id)
        if organization is None:
            logger.warning("plan_credits_no_primary_organization", tenant_id=str(tenant_id))
            return None
        mutation = await self.ledger.apply_delta(
            tenant_id,
            organization.id,
            credits,
            TransactionType.PLAN_ALLOCATION,
            f"plan_credits:{plan}",
            f"plan_credits:{session_id}",
            description=f"{plan} plan credits",
            initiated_by=SYSTEM_ACTOR,
            commit=False,
        )
        return {"entity_id": str(organization.id), **mutation.as_dict()}

    # ------------------------------------------------------------------
    # invoice payments
    # ------------------------------------------------------------------

    async def _handle_payment_succeeded(self, event: NormalizedEvent) -> dict[str, Any]:
        invoice: InvoicePayment = event.data  # type: ignore[assignment]
        return await self._apply_invoice_payment(event, invoice)

    async def _handle_invoice_payment_paid(self, event: NormalizedEvent) -> dict[str, Any]:
        record: InvoicePaymentPaid = event.data  # type: ignore[assignment]
        if record.invoice_id and self.gateway.is_configured():
            try:
                invoice = await self.gateway.retrieve_invoice(record.invoice_id)
            except GatewayError as exc:
                logger.warning(
                    "invoice_retrieval_failed",
                    invoice_id=record.invoice_id,
                    error=exc.message,
                )
            else:
                return await self._apply_invoice_payment(event, invoice)

        # Without the invoice, settle the payment we already know about.
        if record.payment_intent_id:
            payment = await self.payments.by_intent(record.payment_intent_id)
            if payment is not None:
                if payment.status in (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value):
                    payment.status = PaymentStatus.SUCCEEDED.value
                payment.paid_at = record.paid_at or utcnow()
                await self.db.flush()
                return {
                    "tenant_id": str(payment.tenant_id),
                    "payment_id": str(payment.id),
                    "matched_by": "payment_intent",
                }
        return _skipped("invoice_unavailable", invoice_id=record.invoice_id)

    async def _apply_invoice_payment(
        self, event: NormalizedEvent, invoice: InvoicePayment
    ) -> dict[str, Any]:
        subscription, matched_by = await self._resolve_subscription(
            invoice.subscription_id,
            invoice.customer_id,
            customer_email=invoice.customer_email,
        )
        if invoice.period_start:
            subscription.current_period_start = invoice.period_start
        if invoice.period_end:
            subscription.current_period_end = invoice.period_end
        paid_at = invoice.paid_at or utcnow()
        subscription.last_payment_at = paid_at

        await self.subscriptions.transition(
            subscription,
            SubscriptionStatus.ACTIVE,
            plan=invoice.plan_id,
            source=f"{event.provider}:{event.type.value}",
            strict=False,
        )

        payment, created = await self.payments.upsert(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            payment_intent_id=invoice.payment_intent_id,
            invoice_id=invoice.invoice_id,
            charge_id=invoice.charge_id,
            amount=invoice.amount_paid,
            currency=invoice.currency,
            status=PaymentStatus.SUCCEEDED,
            payment_type=PaymentType.SUBSCRIPTION,
            details={
                "customer_id": invoice.customer_id,
                "billing_reason": invoice.billing_reason,
                "subscription_period": {
                    "start": _iso(invoice.period_start),
                    "end": _iso(invoice.period_end),
                },
                "attempt_count": invoice.attempt_count,
                "matched_by": matched_by,
                "provider": event.provider,
            },
            paid_at=paid_at,
        )
        logger.info(
            "invoice_payment_applied",
            tenant_id=str(subscription.tenant_id),
            invoice_id=invoice.invoice_id,
            matched_by=matched_by,
            amount=format_amount(invoice.amount_paid),
        )
        return {
            "tenant_id": str(subscription.tenant_id),
            "subscription_id": str(subscription.id),
            "payment_id": str(payment.id),
            "payment_created": created,
            "matched_by": matched_by,
        }

    async def _resolve_subscription(
        self,
        external_subscription_id: Optional[str],
        customer_id: Optional[str],
        *,
        customer_email: Optional[str] = None,
        use_gateway: bool = True,
    ) -> tuple[Subscription, str]:
        """
        Find the subscription an invoice belongs to.

        Order: gateway subscription id, gateway customer id on the
        subscription, then on the tenant, then the gateway customer's email
        against local users. Raises ReconciliationDriftError when every
        lookup misses.
        """
        chain: list[str] = []

        if external_subscription_id:
            chain.append("external_subscription_id")
            subscription = await self.subscriptions.get_by_external_id(external_subscription_id)
            if subscription is not None:
                return subscription, "external_subscription_id"

        if customer_id:
            chain.append("subscription_customer_id")
            subscription = await self.subscriptions.get_by_customer(customer_id)
            if subscription is not None:
                self._link(subscription, external_subscription_id, customer_id)
                return subscription, "subscription_customer_id"

            chain.append("tenant_customer_id")
            result = await self.db.execute(
                select(Tenant).where(Tenant.customer_id == customer_id).limit(1)
            )
            tenant = result.scalar_one_or_none()
            if tenant is not None:
                subscription = await self.subscriptions.get_for_tenant(tenant.id)
                if subscription is not None:
                    self._link(subscription, external_subscription_id, customer_id)
                    return subscription, "tenant_customer_id"

        email = customer_email
        if use_gateway and customer_id and self.gateway.is_configured():
            chain.append("gateway_customer_email")
            try:
                customer = await self.gateway.retrieve_customer(customer_id)
            except GatewayError as exc:
                logger.warning(
                    "gateway_customer_lookup_failed",
                    customer_id=customer_id,
                    error=exc.message,
                )
            else:
                if not customer.deleted and customer.email:
                    email = customer.email

        if email:
            chain.append("user_email")
            result = await self.db.execute(
                select(User)
                .where(User.email == email.strip().lower(), User.is_active.is_(True))
                .limit(1)
            )
            user = result.scalar_one_or_none()
            if user is not None:
                subscription = await self.subscriptions.get_for_tenant(user.tenant_id)
                if subscription is not None:
                    self._link(subscription, external_subscription_id, customer_id)
                    tenant = await self.db.get(Tenant, user.tenant_id)
                    if tenant is not None and customer_id:
                        tenant.customer_id = customer_id
                    return subscription, "user_email"

        raise ReconciliationDriftError(
            "No local subscription matches the gateway payment",
            details={
                "lookup_chain": chain,
                "subscription_id": external_subscription_id,
                "customer_id": customer_id,
            },
        )

    @staticmethod
    def _link(
        subscription: Subscription,
        external_subscription_id: Optional[str],
        customer_id: Optional[str],
    ) -> None:
        """Record the gateway ids on a subscription found by fallback."""
        if external_subscription_id:
            subscription.external_subscription_id = external_subscription_id
        if customer_id:
            subscription.customer_id = customer_id

    async def _handle_payment_failed(self, event: NormalizedEvent) -> dict[str, Any]:
        invoice: InvoicePayment = event.data  # type: ignore[assignment]
        try:
            subscription, matched_by = await self._resolve_subscription(
                invoice.subscription_id, invoice.customer_id, use_gateway=False
            )
        except ReconciliationDriftError:
            logger.warning(
                "payment_failed_subscription_not_found",
                invoice_id=invoice.invoice_id,
                subscription_id=invoice.subscription_id,
            )
            return _skipped("subscription_not_found")

        await self.subscriptions.transition(
            subscription,
            SubscriptionStatus.PAST_DUE,
            source=f"{event.provider}:{event.type.value}",
            strict=False,
        )
        failure_reason = invoice.failure_reason or "Payment failed"
        payment, _ = await self.payments.upsert(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            payment_intent_id=invoice.payment_intent_id,
            invoice_id=invoice.invoice_id,
            amount=invoice.amount_due,
            currency=invoice.currency,
            status=PaymentStatus.FAILED,
            payment_type=PaymentType.SUBSCRIPTION,
            details={
                "customer_id": invoice.customer_id,
                "failure_reason": failure_reason,
                "attempt_count": invoice.attempt_count,
                "next_payment_attempt": _iso(invoice.next_payment_attempt),
                "billing_reason": invoice.billing_reason,
                "provider": event.provider,
            },
        )
        self._notify(
            subscription.tenant_id,
            "payment_failed",
            {
                "amount": format_amount(invoice.amount_due),
                "currency": (invoice.currency or "").upper(),
                "failure_reason": failure_reason,
                "next_attempt": _iso(invoice.next_payment_attempt),
            },
        )
        return {
            "tenant_id": str(subscription.tenant_id),
            "subscription_id": str(subscription.id),
            "payment_id": str(payment.id),
            "matched_by": matched_by,
        }

    # ------------------------------------------------------------------
    # subscription lifecycle
    # ------------------------------------------------------------------

    async def _find_subscription(self, change: SubscriptionChange) -> Optional[Subscription]:
        subscription = None
        if change.subscription_id:
            subscription = await self.subscriptions.get_by_external_id(change.subscription_id)
        if subscription is None and change.customer_id:
            subscription = await self.subscriptions.get_by_customer(change.customer_id)
        return subscription

    async def _apply_subscription_change(
        self, event: NormalizedEvent, change: SubscriptionChange
    ) -> dict[str, Any]:
        subscription = await self._find_subscription(change)
        if subscription is None:
            logger.warning(
                "subscription_change_unmatched",
                subscription_id=change.subscription_id,
                customer_id=change.customer_id,
            )
            return _skipped("subscription_not_found")

        self._link(subscription, change.subscription_id, change.customer_id)
        if change.current_period_start:
            subscription.current_period_start = change.current_period_start
        if change.current_period_end:
            subscription.current_period_end = change.current_period_end

        target = normalize_status(change.status)
        transitioned = False
        if target is not None:
            transitioned = await self.subscriptions.transition(
                subscription,
                target,
                plan=change.plan_id,
                source=f"{event.provider}:{event.type.value}",
                strict=False,
                occurred_at=change.canceled_at,
            )
        else:
            await self.db.flush()
        return {
            "tenant_id": str(subscription.tenant_id),
            "subscription_id": str(subscription.id),
            "status": subscription.status,
            "transitioned": transitioned,
        }

    async def _handle_subscription_created(self, event: NormalizedEvent) -> dict[str, Any]:
        return await self._apply_subscription_change(event, event.data)  # type: ignore[arg-type]

    async def _handle_subscription_updated(self, event: NormalizedEvent) -> dict[str, Any]:
        return await self._apply_subscription_change(event, event.data)  # type: ignore[arg-type]

    async def _handle_subscription_deleted(self, event: NormalizedEvent) -> dict[str, Any]:
        change: SubscriptionChange = event.data  # type: ignore[assignment]
        subscription = await self._find_subscription(change)
        if subscription is None:
            return _skipped("subscription_not_found")
        await self.subscriptions.transition(
            subscription,
            SubscriptionStatus.CANCELED,
            source=f"{event.provider}:{event.type.value}",
            occurred_at=change.canceled_at,
        )
        return {
            "tenant_id": str(subscription.tenant_id),
            "subscription_id": str(subscription.id),
            "status": subscription.status,
        }

    # ------------------------------------------------------------------
    # charges, disputes and refunds
    # ------------------------------------------------------------------

    async def _handle_charge_succeeded(self, event: NormalizedEvent) -> dict[str, Any]:
        charge: ChargeSucceeded = event.data  # type: ignore[assignment]
        if charge.payment_intent_id:
            existing = await self.payments.by_intent(charge.payment_intent_id)
            if existing is not None:
                existing.charge_id = existing.charge_id or charge.charge_id
                await self.db.flush()
                return {
                    "tenant_id": str(existing.tenant_id),
                    "payment_id": str(existing.id),
                    "linked": True,
                }

        if not charge.customer_id:
            return _skipped("unknown_customer")
        try:
            subscription, matched_by = await self._resolve_subscription(
                None, charge.customer_id, use_gateway=False
            )
        except ReconciliationDriftError:
            logger.info("charge_for_unknown_customer", charge_id=charge.charge_id)
            return _skipped("unknown_customer")

        payment, created = await self.payments.upsert(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            payment_intent_id=charge.payment_intent_id or charge.charge_id,
            charge_id=charge.charge_id,
            amount=charge.amount,
            currency=charge.currency,
            status=PaymentStatus.SUCCEEDED,
            payment_type=PaymentType.CHARGE,
            details={
                "description": charge.description or "Subscription payment",
                "metadata": charge.metadata,
                "provider": event.provider,
            },
            paid_at=charge.paid_at or utcnow(),
        )
        return {
            "tenant_id": str(subscription.tenant_id),
            "payment_id": str(payment.id),
            "payment_created": created,
            "matched_by": matched_by,
        }

    async def _find_charge_payment(
        self, charge_id: Optional[str], payment_intent_id: Optional[str]
    ) -> Optional[Payment]:
        payment = await self.payments.by_charge(charge_id) if charge_id else None
        if payment is None and payment_intent_id:
            payment = await self.payments.by_intent(payment_intent_id)
        return payment

    async def _handle_charge_disputed(self, event: NormalizedEvent) -> dict[str, Any]:
        dispute: ChargeDisputed = event.data  # type: ignore[assignment]
        payment = await self._find_charge_payment(dispute.charge_id, None)
        if payment is None:
            logger.error("dispute_payment_not_found", charge_id=dispute.charge_id)
            return _skipped("payment_not_found", charge_id=dispute.charge_id)

        payment.status = PaymentStatus.DISPUTED.value
        payment.dispute_id = dispute.dispute_id
        payment.disputed_at = payment.disputed_at or utcnow()
        payment.details = {
            **(payment.details or {}),
            "dispute": {
                "id": dispute.dispute_id,
                "reason": dispute.reason,
                "status": dispute.status,
                "amount": format_amount(dispute.amount),
                "currency": dispute.currency,
                "evidence_due_by": _iso(dispute.evidence_due_by),
                "has_evidence": dispute.has_evidence,
            },
        }
        await self.db.flush()

        self._notify(
            payment.tenant_id,
            "payment_disputed",
            {
                "dispute_id": dispute.dispute_id,
                "amount": format_amount(dispute.amount),
                "currency": (dispute.currency or payment.currency).upper(),
                "reason": dispute.reason or "",
                "evidence_due_by": _iso(dispute.evidence_due_by),
            },
        )
        return {"tenant_id": str(payment.tenant_id), "payment_id": str(payment.id)}

    async def _handle_refund_created(self, event: NormalizedEvent) -> dict[str, Any]:
        refund: RefundCreated = event.data  # type: ignore[assignment]
        if await self.payments.by_refund_id(refund.refund_id) is not None:
            return _skipped("refund_already_recorded", refund_id=refund.refund_id)

        payment = await self._find_charge_payment(refund.charge_id, refund.payment_intent_id)
        if payment is None:
            logger.error("refund_payment_not_found", charge_id=refund.charge_id)
            return _skipped("payment_not_found", charge_id=refund.charge_id)

        original_amount = Decimal(payment.amount)
        refunded_total = min(
            Decimal(payment.amount_refunded or 0) + refund.amount, original_amount
        )
        is_partial = refunded_total < original_amount
        now = utcnow()
        payment.amount_refunded = refunded_total
        payment.status = (
            PaymentStatus.PARTIALLY_REFUNDED.value if is_partial else PaymentStatus.REFUNDED.value
        )
        payment.refunded_at = now
        refunds = list((payment.details or {}).get("refunds", []))
        refunds.append(
            {
                "id": refund.refund_id,
                "amount": format_amount(refund.amount),
                "reason": refund.reason,
                "status": refund.status,
            }
        )
        payment.details = {
            **(payment.details or {}),
            "amount_refunded": format_amount(refunded_total),
            "refunds": refunds,
        }

        refund_row = Payment(
            tenant_id=payment.tenant_id,
            subscription_id=payment.subscription_id,
            charge_id=refund.charge_id or payment.charge_id,
            refund_id=refund.refund_id,
            amount=-refund.amount,
            amount_refunded=Decimal("0"),
            currency=(refund.currency or payment.currency).upper(),
            status=_REFUND_STATUS.get(refund.status or "", PaymentStatus.SUCCEEDED).value,
            payment_type=PaymentType.REFUND.value,
            details={
                "original_payment_id": str(payment.id),
                "refund_reason": refund.reason,
                "is_partial_refund": is_partial,
                "provider": event.provider,
            },
            paid_at=now,
        )
        self.db.add(refund_row)
        await self.db.flush()

        adjustment = await self._refund_credit_adjustment(payment, refund)
        self._notify(
            payment.tenant_id,
            "refund_processed",
            {
                "amount": format_amount(refund.amount),
                "currency": refund_row.currency,
                "partial": is_partial,
            },
        )
        return {
            "tenant_id": str(payment.tenant_id),
            "payment_id": str(payment.id),
            "refund_payment_id": str(refund_row.id),
            "is_partial_refund": is_partial,
            "credit_adjustment": adjustment,
        }

    async def _refund_credit_adjustment(
        self, payment: Payment, refund: RefundCreated
    ) -> Optional[dict[str, Any]]:
        """Claw back purchased credits in proportion to the refunded amount."""
        if payment.payment_type != PaymentType.CREDIT_PURCHASE.value:
            return None
        details = payment.details or {}
        entity_id = _parse_uuid(details.get("entity_id"))
        purchased = details.get("credit_amount")
        if entity_id is None or not purchased or Decimal(payment.amount) <= 0:
            return None

        credits = to_credits(
            Decimal(purchased) * refund.amount / Decimal(payment.amount)
        )
        if credits <= 0:
            return None
        mutation = await self.ledger.apply_delta(
            payment.tenant_id,
            entity_id,
            -credits,
            TransactionType.REFUND_ADJUSTMENT,
            f"refund_adjustment:{payment.id}",
            f"refund_adjustment:{refund.refund_id}",
            clamp_to_zero=True,
            description="Credits reversed for refunded purchase",
            initiated_by=SYSTEM_ACTOR,
            commit=False,
        )
        return mutation.as_dict()

    # ------------------------------------------------------------------

    def _notify(self, tenant_id: UUID, template: str, payload: dict[str, Any]) -> None:
        self._outbox.append((str(tenant_id), template, payload))

    async def _flush_outbox(self) -> None:
        """Notifications go out only after the event's writes are committed."""
        pending, self._outbox = self._outbox, []
        for tenant_id, template, payload in pending:
            try:
                await self.notifier.send(tenant_id, template, payload)
            except Exception as exc:
                logger.warning(
                    "webhook_notification_failed",
                    tenant_id=tenant_id,
                    template=template,
                    error=str(exc),
                )

    @staticmethod
    def _count(event: NormalizedEvent, outcome: str) -> None:
        WEBHOOK_EVENTS_TOTAL.labels(
            provider=event.provider, event_type=event.type.value, outcome=outcome
        ).inc()


_missing_handlers = [
    event_type.value
    for event_type in WebhookEventType
    if event_type is not WebhookEventType.UNKNOWN
    and not callable(getattr(WebhookProcessor, _HANDLER_NAMES.get(event_type, ""), None))
]
if _missing_handlers:
    raise RuntimeError(f"Webhook event types without a handler: {_missing_handlers}")
