"""
Payment gateway adapter contract.

Provider adapters turn raw webhook deliveries into a NormalizedEvent whose
`data` is one typed payload per WebhookEventType, so the webhook processor
never reads provider-specific field names. Lookups used by the reconciliation
fallback (invoice, customer, subscription) use the stripe SDK for Stripe and the
shared httpx client for Paystack, both behind a small tenacity retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

import httpx
import structlog
import tenacity

from app.shared.core.config import get_settings
from app.shared.core.exceptions import GatewayConfigurationError, GatewayError

logger = structlog.get_logger()


class WebhookEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.completed"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    INVOICE_PAYMENT_PAID = "invoice.payment_paid"
    PAYMENT_FAILED = "payment.failed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    CHARGE_DISPUTED = "charge.disputed"
    CHARGE_SUCCEEDED = "charge.succeeded"
    REFUND_CREATED = "refund.created"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CheckoutCompleted:
    session_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    mode: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Decimal = Decimal("0")
    currency: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InvoicePayment:
    """An invoice that was paid or failed; also the shape of retrieve_invoice."""

    invoice_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    amount_paid: Decimal = Decimal("0")
    amount_due: Decimal = Decimal("0")
    currency: Optional[str] = None
    status: Optional[str] = None
    billing_reason: Optional[str] = None
    plan_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    attempt_count: Optional[int] = None
    next_payment_attempt: Optional[datetime] = None
    failure_reason: Optional[str] = None
    customer_email: Optional[str] = None


@dataclass(frozen=True)
class InvoicePaymentPaid:
    """Payment record attached to an invoice; the invoice itself must be fetched."""

    id: str
    invoice_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    paid_at: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionChange:
    subscription_id: str
    customer_id: Optional[str] = None
    status: Optional[str] = None
    plan_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None


@dataclass(frozen=True)
class ChargeDisputed:
    dispute_id: str
    charge_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency: Optional[str] = None
    reason: Optional[str] = None
    status: Optional[str] = None
    evidence_due_by: Optional[datetime] = None
    has_evidence: bool = False


@dataclass(frozen=True)
class ChargeSucceeded:
    charge_id: str
    customer_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency: Optional[str] = None
    description: Optional[str] = None
    paid_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundCreated:
    refund_id: str
    charge_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency: Optional[str] = None
    reason: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class UnhandledEvent:
    provider_type: str


@dataclass(frozen=True)
class GatewayCustomer:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    deleted: bool = False


EventPayload = Union[
    CheckoutCompleted,
    InvoicePayment,
    InvoicePaymentPaid,
    SubscriptionChange,
    ChargeDisputed,
    ChargeSucceeded,
    RefundCreated,
    UnhandledEvent,
]


@dataclass(frozen=True)
class NormalizedEvent:
    id: str
    type: WebhookEventType
    provider: str
    data: EventPayload
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def from_epoch(value: Any) -> Optional[datetime]:
    """Epoch seconds or an ISO-8601 string to an aware datetime."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("gateway_timestamp_unparseable", value=value)
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def object_id(value: Any) -> Optional[str]:
    """Gateways send either an id string or an expanded object with an id."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        inner = value.get("id")
        return str(inner) if inner else None
    return None


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


gateway_retry = tenacity.retry(
    retry=tenacity.retry_if_exception(_is_transient),
    wait=tenacity.wait_exponential(multiplier=0.5, min=0.5, max=5),
    stop=tenacity.stop_after_attempt(3),
    before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class PaymentGateway:
    """Base adapter. Subclasses set `provider` and implement the mappings."""

    provider: str = ""
    signature_header: str = ""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        api_base: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.secret_key = secret_key
        self.api_base = (api_base or "").rstrip("/")
        self._http = client

    def is_configured(self) -> bool:
        return bool(self.secret_key)

    async def verify_webhook(
        self, raw_body: bytes, signature: str, secret: Optional[str] = None
    ) -> NormalizedEvent:
        raise NotImplementedError

    async def retrieve_invoice(self, invoice_id: str) -> InvoicePayment:
        raise NotImplementedError

    async def retrieve_customer(self, customer_id: str) -> GatewayCustomer:
        raise NotImplementedError

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionChange:
        raise NotImplementedError

    def _client(self) -> httpx.AsyncClient:
        if self._http is not None:
            return self._http
        from app.shared.core.http import get_http_client

        return get_http_client()

    async def _get(self, path: str) -> dict[str, Any]:
        """GET a provider resource, retrying transient failures."""
        if not self.is_configured():
            raise GatewayConfigurationError(
                f"{self.provider} secret key is not configured",
                details={"provider": self.provider},
            )

        @gateway_retry
        async def _call() -> httpx.Response:
            response = await self._client().get(
                f"{self.api_base}/{path.lstrip('/')}",
                headers={"Authorization": f"Bearer {self.secret_key}"},
                timeout=get_settings().GATEWAY_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            return response

        try:
            response = await _call()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "gateway_api_error",
                provider=self.provider,
                path=path,
                status_code=exc.response.status_code,
            )
            raise GatewayError(
                f"{self.provider} lookup failed with status {exc.response.status_code}",
                code="gateway_lookup_failed",
                status_code=502,
                details={"provider": self.provider, "path": path},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "gateway_api_unreachable", provider=self.provider, path=path, error=str(exc)
            )
            raise GatewayError(
                f"{self.provider} is unreachable",
                code="gateway_unreachable",
                status_code=502,
                details={"provider": self.provider, "path": path},
            ) from exc

        payload = response.json()
        if not isinstance(payload, dict):
            raise GatewayError(
                f"Invalid {self.provider} response payload type",
                code="gateway_invalid_response",
                status_code=502,
            )
        return payload


def get_payment_gateway(
    provider: Optional[str] = None, client: Optional[httpx.AsyncClient] = None
) -> PaymentGateway:
    """Build the adapter for a provider (defaults to PAYMENT_PROVIDER)."""
    from app.modules.billing.domain.billing.paystack_gateway import PaystackGateway
    from app.modules.billing.domain.billing.stripe_gateway import StripeGateway

    settings = get_settings()
    name = (provider or settings.PAYMENT_PROVIDER).strip().lower()
    factories = {
        "stripe": lambda: StripeGateway(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        ),
        "paystack": lambda: PaystackGateway(
            secret_key=settings.PAYSTACK_SECRET_KEY,
            api_base=settings.PAYSTACK_API_BASE,
            client=client,
        ),
    }
    factory = factories.get(name)
    if factory is None:
        raise GatewayConfigurationError(
            f"Unsupported payment provider: {name}", details={"provider": name}
        )
    return factory()
