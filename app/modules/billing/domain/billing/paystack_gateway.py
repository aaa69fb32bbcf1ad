"""
Paystack adapter.

Paystack signs the raw body with HMAC-SHA512 of the secret key and sends it in
`x-paystack-signature`. Its events carry no delivery id, so the event id is
derived from the event name and the transaction reference.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Callable, Optional

import httpx

from app.modules.billing.domain.billing.gateway import (
    ChargeDisputed,
    ChargeSucceeded,
    CheckoutCompleted,
    EventPayload,
    GatewayCustomer,
    InvoicePayment,
    NormalizedEvent,
    PaymentGateway,
    RefundCreated,
    SubscriptionChange,
    UnhandledEvent,
    WebhookEventType,
    from_epoch,
    logger,
)
from app.shared.core.exceptions import (
    GatewayConfigurationError,
    GatewayError,
    SignatureError,
)
from app.shared.core.money import minor_units_to_decimal

# Paystack subscription statuses in gateway-neutral terms.
_SUBSCRIPTION_STATUS = {
    "active": "active",
    "non-renewing": "active",
    "attention": "past_due",
    "completed": "canceled",
    "cancelled": "canceled",
}


def _metadata(data: dict[str, Any]) -> dict[str, Any]:
    metadata = data.get("metadata") or {}
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except (json.JSONDecodeError, TypeError, ValueError):
            metadata = {}
    return metadata if isinstance(metadata, dict) else {}


def _customer(data: dict[str, Any]) -> dict[str, Any]:
    customer = data.get("customer") or {}
    return customer if isinstance(customer, dict) else {}


def _plan(data: dict[str, Any]) -> Optional[str]:
    plan = data.get("plan") or {}
    if not isinstance(plan, dict):
        return None
    return plan.get("name") or plan.get("plan_code")


def _is_checkout(data: dict[str, Any]) -> bool:
    metadata = _metadata(data)
    return bool(metadata.get("tenantId") or metadata.get("tenant_id"))


def parse_charge_success(data: dict[str, Any]) -> CheckoutCompleted | ChargeSucceeded:
    metadata = _metadata(data)
    reference = str(data.get("reference") or data.get("id") or "")
    customer = _customer(data)
    if _is_checkout(data):
        is_credit_purchase = bool(
            metadata.get("creditAmount") or metadata.get("credit_amount")
        )
        return CheckoutCompleted(
            session_id=reference,
            customer_id=customer.get("customer_code"),
            subscription_id=None,
            payment_intent_id=reference,
            mode="payment" if is_credit_purchase else "subscription",
            payment_status="paid" if data.get("status") == "success" else data.get("status"),
            amount_total=minor_units_to_decimal(data.get("amount")),
            currency=data.get("currency"),
            metadata={"planId": _plan(data), **metadata} if _plan(data) else metadata,
        )
    return ChargeSucceeded(
        charge_id=reference,
        customer_id=customer.get("customer_code"),
        payment_intent_id=reference,
        amount=minor_units_to_decimal(data.get("amount")),
        currency=data.get("currency"),
        description=metadata.get("description"),
        paid_at=from_epoch(data.get("paid_at") or data.get("paidAt")),
        metadata=metadata,
    )


def parse_subscription(data: dict[str, Any]) -> SubscriptionChange:
    status = str(data.get("status") or "").lower()
    return SubscriptionChange(
        subscription_id=str(data.get("subscription_code") or ""),
        customer_id=_customer(data).get("customer_code"),
        status=_SUBSCRIPTION_STATUS.get(status, status or None),
        plan_id=_plan(data),
        current_period_start=from_epoch(data.get("createdAt")),
        current_period_end=from_epoch(data.get("next_payment_date")),
        canceled_at=from_epoch(data.get("cancelledAt")),
    )


def parse_invoice(data: dict[str, Any]) -> InvoicePayment:
    subscription = data.get("subscription") or {}
    transaction = data.get("transaction") or {}
    customer = _customer(data)
    amount = minor_units_to_decimal(data.get("amount"))
    paid = bool(data.get("paid")) or data.get("status") == "success"
    return InvoicePayment(
        invoice_id=str(data.get("invoice_code") or data.get("id") or ""),
        customer_id=customer.get("customer_code"),
        subscription_id=subscription.get("subscription_code")
        if isinstance(subscription, dict)
        else None,
        payment_intent_id=transaction.get("reference")
        if isinstance(transaction, dict)
        else None,
        amount_paid=amount if paid else minor_units_to_decimal(0),
        amount_due=amount,
        currency=data.get("currency"),
        status="paid" if paid else data.get("status"),
        billing_reason="subscription_cycle",
        plan_id=_plan(subscription) if isinstance(subscription, dict) else None,
        period_start=from_epoch(data.get("period_start")),
        period_end=from_epoch(data.get("period_end")),
        paid_at=from_epoch(data.get("paid_at")),
        failure_reason=data.get("description"),
        customer_email=customer.get("email"),
    )


def parse_refund(data: dict[str, Any]) -> RefundCreated:
    return RefundCreated(
        refund_id=str(data.get("id") or data.get("refund_reference") or ""),
        charge_id=data.get("transaction_reference"),
        payment_intent_id=data.get("transaction_reference"),
        amount=minor_units_to_decimal(data.get("amount")),
        currency=data.get("currency"),
        reason=data.get("merchant_note") or data.get("customer_note"),
        status="succeeded" if data.get("status") == "processed" else data.get("status"),
    )


def parse_dispute(data: dict[str, Any]) -> ChargeDisputed:
    transaction = data.get("transaction") or {}
    amount = data.get("refund_amount")
    if amount is None and isinstance(transaction, dict):
        amount = transaction.get("amount")
    return ChargeDisputed(
        dispute_id=str(data.get("id") or ""),
        charge_id=transaction.get("reference") if isinstance(transaction, dict) else None,
        amount=minor_units_to_decimal(amount),
        currency=data.get("currency"),
        reason=data.get("category"),
        status=data.get("status"),
        evidence_due_by=from_epoch(data.get("dueAt")),
        has_evidence=bool(data.get("evidence")),
    )


_EVENT_PARSERS: dict[
    str, tuple[WebhookEventType, Callable[[dict[str, Any]], EventPayload]]
] = {
    "charge.success": (WebhookEventType.CHECKOUT_COMPLETED, parse_charge_success),
    "subscription.create": (WebhookEventType.SUBSCRIPTION_CREATED, parse_subscription),
    "subscription.not_renew": (WebhookEventType.SUBSCRIPTION_UPDATED, parse_subscription),
    "subscription.disable": (WebhookEventType.SUBSCRIPTION_DELETED, parse_subscription),
    "invoice.payment_failed": (WebhookEventType.PAYMENT_FAILED, parse_invoice),
    "invoice.update": (WebhookEventType.PAYMENT_SUCCEEDED, parse_invoice),
    "refund.processed": (WebhookEventType.REFUND_CREATED, parse_refund),
    "charge.dispute.create": (WebhookEventType.CHARGE_DISPUTED, parse_dispute),
}


class PaystackGateway(PaymentGateway):
    provider = "paystack"
    signature_header = "x-paystack-signature"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        api_base: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            secret_key=secret_key,
            api_base=api_base or "https://api.paystack.co",
            client=client,
        )

    async def verify_webhook(
        self, raw_body: bytes, signature: str, secret: Optional[str] = None
    ) -> NormalizedEvent:
        signing_key = secret or self.secret_key
        if not signing_key:
            logger.error("paystack_secret_key_not_configured")
            raise GatewayConfigurationError("PAYSTACK_SECRET_KEY not configured")
        if not signature:
            logger.warning("paystack_webhook_missing_signature")
            raise SignatureError("Missing x-paystack-signature header")

        expected = hmac.new(signing_key.encode(), raw_body, hashlib.sha512).hexdigest()
        if not hmac.compare_digest(expected, signature):
            logger.warning(
                "paystack_webhook_invalid_signature", provided_sig=signature[:8] + "..."
            )
            raise SignatureError("Invalid signature")

        try:
            event = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.error("paystack_webhook_invalid_json", payload_len=len(raw_body))
            raise GatewayError("Invalid JSON payload", code="invalid_payload") from exc
        if not isinstance(event, dict) or not event.get("event"):
            raise GatewayError("Invalid webhook event: missing event", code="invalid_payload")

        provider_type = str(event["event"])
        data = event.get("data") or {}
        entry = _EVENT_PARSERS.get(provider_type)
        if entry is None:
            event_type = WebhookEventType.UNKNOWN
            payload: EventPayload = UnhandledEvent(provider_type)
        else:
            event_type, parser = entry
            payload = parser(data)
            if isinstance(payload, ChargeSucceeded):
                event_type = WebhookEventType.CHARGE_SUCCEEDED
            elif isinstance(payload, InvoicePayment) and (
                event_type == WebhookEventType.PAYMENT_SUCCEEDED and payload.status != "paid"
            ):
                # Unpaid invoice.update is a reminder, not a payment.
                event_type = WebhookEventType.UNKNOWN
                payload = UnhandledEvent(provider_type)

        reference = (
            data.get("reference")
            or data.get("subscription_code")
            or data.get("invoice_code")
            or data.get("id")
            or ""
        )
        return NormalizedEvent(
            id=f"{provider_type}:{reference}",
            type=event_type,
            provider=self.provider,
            data=payload,
            raw=event,
        )

    async def retrieve_invoice(self, invoice_id: str) -> InvoicePayment:
        payload = await self._get(f"paymentrequest/{invoice_id}")
        return parse_invoice(payload.get("data") or {})

    async def retrieve_customer(self, customer_id: str) -> GatewayCustomer:
        payload = await self._get(f"customer/{customer_id}")
        data = payload.get("data") or {}
        name = " ".join(
            part for part in (data.get("first_name"), data.get("last_name")) if part
        )
        return GatewayCustomer(
            id=str(data.get("customer_code") or customer_id),
            email=data.get("email"),
            name=name or None,
            metadata=_metadata(data),
        )

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionChange:
        payload = await self._get(f"subscription/{subscription_id}")
        return parse_subscription(payload.get("data") or {})
