from app.modules.billing.api.v1.billing import router
from app.modules.billing.domain.billing.webhook_processor import WebhookProcessor

__all__ = ["router", "WebhookProcessor"]
