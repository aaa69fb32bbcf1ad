"""Billing Services."""

from app.modules.billing.domain.billing.gateway import (
    NormalizedEvent,
    PaymentGateway,
    WebhookEventType,
    get_payment_gateway,
)
from app.modules.billing.domain.billing.subscription_state import (
    SubscriptionStateMachine,
)
from app.modules.billing.domain.billing.webhook_processor import WebhookProcessor


__all__ = [
    "NormalizedEvent",
    "PaymentGateway",
    "WebhookEventType",
    "get_payment_gateway",
    "SubscriptionStateMachine",
    "WebhookProcessor",
]
