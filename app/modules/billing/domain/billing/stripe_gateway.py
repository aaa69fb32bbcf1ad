"""Stripe adapter: SDK-backed verification and lookups, plus event normalization."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import stripe
import tenacity

from app.modules.billing.domain.billing.gateway import (
    ChargeDisputed,
    ChargeSucceeded,
    CheckoutCompleted,
    EventPayload,
    GatewayCustomer,
    InvoicePayment,
    InvoicePaymentPaid,
    NormalizedEvent,
    PaymentGateway,
    RefundCreated,
    SubscriptionChange,
    UnhandledEvent,
    WebhookEventType,
    from_epoch,
    logger,
    object_id,
)
from app.shared.core.exceptions import (
    GatewayConfigurationError,
    GatewayError,
    SignatureError,
)
from app.shared.core.money import minor_units_to_decimal

STRIPE_EVENT_MAP: dict[str, WebhookEventType] = {
    "checkout.session.completed": WebhookEventType.CHECKOUT_COMPLETED,
    "checkout.session.async_payment_succeeded": WebhookEventType.CHECKOUT_COMPLETED,
    "invoice.paid": WebhookEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_paid": WebhookEventType.INVOICE_PAYMENT_PAID,
    "invoice_payment.paid": WebhookEventType.INVOICE_PAYMENT_PAID,
    "invoice.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "customer.subscription.created": WebhookEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": WebhookEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": WebhookEventType.SUBSCRIPTION_DELETED,
    "charge.succeeded": WebhookEventType.CHARGE_SUCCEEDED,
    "charge.dispute.created": WebhookEventType.CHARGE_DISPUTED,
    "refund.created": WebhookEventType.REFUND_CREATED,
}


def _plan_from_price(price: Any) -> Optional[str]:
    """Plans are tagged on the Stripe price via lookup_key or metadata.plan_id."""
    if not isinstance(price, dict):
        return None
    metadata = price.get("metadata") or {}
    return metadata.get("plan_id") or metadata.get("planId") or price.get("lookup_key")


def _first_line_price(obj: dict[str, Any], container: str) -> Any:
    lines = (obj.get(container) or {}).get("data") or []
    if not lines or not isinstance(lines[0], dict):
        return None
    return lines[0].get("price")


def parse_checkout(obj: dict[str, Any]) -> CheckoutCompleted:
    return CheckoutCompleted(
        session_id=str(obj.get("id") or ""),
        customer_id=object_id(obj.get("customer")),
        subscription_id=object_id(obj.get("subscription")),
        payment_intent_id=object_id(obj.get("payment_intent")),
        mode=obj.get("mode"),
        payment_status=obj.get("payment_status"),
        amount_total=minor_units_to_decimal(obj.get("amount_total")),
        currency=obj.get("currency"),
        metadata=dict(obj.get("metadata") or {}),
    )


def parse_invoice(obj: dict[str, Any]) -> InvoicePayment:
    metadata = obj.get("metadata") or {}
    failure = obj.get("last_finalization_error") or {}
    transitions = obj.get("status_transitions") or {}
    return InvoicePayment(
        invoice_id=str(obj.get("id") or ""),
        customer_id=object_id(obj.get("customer")),
        subscription_id=object_id(obj.get("subscription")),
        payment_intent_id=object_id(obj.get("payment_intent")),
        charge_id=object_id(obj.get("charge")),
        amount_paid=minor_units_to_decimal(obj.get("amount_paid")),
        amount_due=minor_units_to_decimal(obj.get("amount_due")),
        currency=obj.get("currency"),
        status=obj.get("status"),
        billing_reason=obj.get("billing_reason"),
        plan_id=_plan_from_price(_first_line_price(obj, "lines"))
        or metadata.get("planId")
        or metadata.get("plan_id"),
        period_start=from_epoch(obj.get("period_start")),
        period_end=from_epoch(obj.get("period_end")),
        paid_at=from_epoch(transitions.get("paid_at")),
        attempt_count=obj.get("attempt_count"),
        next_payment_attempt=from_epoch(obj.get("next_payment_attempt")),
        failure_reason=failure.get("message"),
        customer_email=obj.get("customer_email"),
    )


def parse_invoice_payment(obj: dict[str, Any]) -> InvoicePaymentPaid:
    payment = obj.get("payment") or {}
    transitions = obj.get("status_transitions") or {}
    return InvoicePaymentPaid(
        id=str(obj.get("id") or ""),
        invoice_id=object_id(obj.get("invoice")),
        payment_intent_id=object_id(payment.get("payment_intent")),
        paid_at=from_epoch(transitions.get("paid_at")),
    )


def parse_subscription(obj: dict[str, Any]) -> SubscriptionChange:
    metadata = obj.get("metadata") or {}
    return SubscriptionChange(
        subscription_id=str(obj.get("id") or ""),
        customer_id=object_id(obj.get("customer")),
        status=obj.get("status"),
        plan_id=_plan_from_price(_first_line_price(obj, "items"))
        or metadata.get("planId")
        or metadata.get("plan_id"),
        current_period_start=from_epoch(obj.get("current_period_start")),
        current_period_end=from_epoch(obj.get("current_period_end")),
        canceled_at=from_epoch(obj.get("canceled_at")),
    )


def parse_dispute(obj: dict[str, Any]) -> ChargeDisputed:
    evidence = obj.get("evidence_details") or {}
    return ChargeDisputed(
        dispute_id=str(obj.get("id") or ""),
        charge_id=object_id(obj.get("charge")),
        amount=minor_units_to_decimal(obj.get("amount")),
        currency=obj.get("currency"),
        reason=obj.get("reason"),
        status=obj.get("status"),
        evidence_due_by=from_epoch(evidence.get("due_by")),
        has_evidence=bool(evidence.get("has_evidence")),
    )


def parse_charge(obj: dict[str, Any]) -> ChargeSucceeded:
    return ChargeSucceeded(
        charge_id=str(obj.get("id") or ""),
        customer_id=object_id(obj.get("customer")),
        payment_intent_id=object_id(obj.get("payment_intent")),
        amount=minor_units_to_decimal(obj.get("amount")),
        currency=obj.get("currency"),
        description=obj.get("description"),
        paid_at=from_epoch(obj.get("created")),
        metadata=dict(obj.get("metadata") or {}),
    )


def parse_refund(obj: dict[str, Any]) -> RefundCreated:
    return RefundCreated(
        refund_id=str(obj.get("id") or ""),
        charge_id=object_id(obj.get("charge")),
        payment_intent_id=object_id(obj.get("payment_intent")),
        amount=minor_units_to_decimal(obj.get("amount")),
        currency=obj.get("currency"),
        reason=obj.get("reason"),
        status=obj.get("status"),
    )


_PARSERS: dict[WebhookEventType, Callable[[dict[str, Any]], EventPayload]] = {
    WebhookEventType.CHECKOUT_COMPLETED: parse_checkout,
    WebhookEventType.PAYMENT_SUCCEEDED: parse_invoice,
    WebhookEventType.INVOICE_PAYMENT_PAID: parse_invoice_payment,
    WebhookEventType.PAYMENT_FAILED: parse_invoice,
    WebhookEventType.SUBSCRIPTION_CREATED: parse_subscription,
    WebhookEventType.SUBSCRIPTION_UPDATED: parse_subscription,
    WebhookEventType.SUBSCRIPTION_DELETED: parse_subscription,
    WebhookEventType.CHARGE_DISPUTED: parse_dispute,
    WebhookEventType.CHARGE_SUCCEEDED: parse_charge,
    WebhookEventType.REFUND_CREATED: parse_refund,
}


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return True
    if isinstance(exc, stripe.StripeError):
        return (exc.http_status or 0) >= 500
    return False


stripe_retry = tenacity.retry(
    retry=tenacity.retry_if_exception(_is_transient),
    wait=tenacity.wait_exponential(multiplier=0.5, min=0.5, max=5),
    stop=tenacity.stop_after_attempt(3),
    before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class StripeGateway(PaymentGateway):
    provider = "stripe"
    signature_header = "stripe-signature"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: int = 300,
    ):
        super().__init__(secret_key=secret_key)
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds

    async def verify_webhook(
        self, raw_body: bytes, signature: str, secret: Optional[str] = None
    ) -> NormalizedEvent:
        endpoint_secret = secret or self.webhook_secret
        if not endpoint_secret:
            raise GatewayConfigurationError("Webhook secret not configured")
        if not signature:
            logger.warning("stripe_webhook_missing_signature")
            raise SignatureError("Missing Stripe-Signature header")

        try:
            stripe_event = stripe.Webhook.construct_event(
                raw_body, signature, endpoint_secret, tolerance=self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as exc:
            if "tolerance" in str(exc):
                logger.warning("stripe_webhook_timestamp_out_of_tolerance")
                raise SignatureError("Webhook timestamp outside tolerance") from exc
            logger.warning("stripe_webhook_invalid_signature", error=str(exc))
            raise SignatureError("Invalid signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_invalid_json", payload_len=len(raw_body))
            raise GatewayError("Invalid JSON payload", code="invalid_payload") from exc

        event = stripe_event.to_dict()
        if not event.get("id") or not event.get("type"):
            raise GatewayError(
                "Invalid webhook event: missing id or type", code="invalid_payload"
            )

        provider_type = str(event["type"])
        obj = (event.get("data") or {}).get("object") or {}
        event_type = STRIPE_EVENT_MAP.get(provider_type, WebhookEventType.UNKNOWN)
        parser = _PARSERS.get(event_type)
        data: EventPayload = (
            parser(obj) if parser is not None else UnhandledEvent(provider_type)
        )
        return NormalizedEvent(
            id=str(event["id"]),
            type=event_type,
            provider=self.provider,
            data=data,
            raw=event,
        )

    async def _retrieve(self, resource: Any, object_id: str) -> dict[str, Any]:
        """Fetch a Stripe object by id. The SDK call is blocking, so it runs in a thread."""
        if not self.is_configured():
            raise GatewayConfigurationError(
                "stripe secret key is not configured", details={"provider": self.provider}
            )
        resource_name = resource.__name__.lower()

        @stripe_retry
        async def _call() -> Any:
            return await asyncio.to_thread(
                resource.retrieve, object_id, api_key=self.secret_key
            )

        try:
            found = await _call()
        except stripe.APIConnectionError as exc:
            logger.error(
                "gateway_api_unreachable",
                provider=self.provider,
                resource=resource_name,
                error=str(exc),
            )
            raise GatewayError(
                "stripe is unreachable",
                code="gateway_unreachable",
                status_code=502,
                details={"provider": self.provider, "resource": resource_name},
            ) from exc
        except stripe.StripeError as exc:
            logger.error(
                "gateway_api_error",
                provider=self.provider,
                resource=resource_name,
                status_code=exc.http_status,
            )
            raise GatewayError(
                f"stripe lookup failed with status {exc.http_status}",
                code="gateway_lookup_failed",
                status_code=502,
                details={"provider": self.provider, "resource": resource_name},
            ) from exc
        return found.to_dict()

    async def retrieve_invoice(self, invoice_id: str) -> InvoicePayment:
        return parse_invoice(await self._retrieve(stripe.Invoice, invoice_id))

    async def retrieve_customer(self, customer_id: str) -> GatewayCustomer:
        payload = await self._retrieve(stripe.Customer, customer_id)
        return GatewayCustomer(
            id=str(payload.get("id") or customer_id),
            email=payload.get("email"),
            name=payload.get("name"),
            metadata=dict(payload.get("metadata") or {}),
            deleted=bool(payload.get("deleted")),
        )

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionChange:
        return parse_subscription(await self._retrieve(stripe.Subscription, subscription_id))
