"""
Notification Dispatcher

Rendering and delivery (email, in-app) belong to the notification service.
This module only hands it a template name and a payload. Without a configured
endpoint the notification is logged and dropped.
"""

from typing import Any, Dict, Optional, Protocol

import httpx
import structlog

from app.shared.core.config import get_settings
from app.shared.core.http import get_http_client

logger = structlog.get_logger()


class Notifier(Protocol):
    async def send(
        self, tenant_id: str, template: str, payload: Dict[str, Any]
    ) -> None: ...


class NotificationDispatcher:
    """Posts tenant notifications to the external notification service."""

    def __init__(self, endpoint: Optional[str] = None):
        self.endpoint = endpoint if endpoint is not None else get_settings().NOTIFICATION_WEBHOOK_URL

    async def send(
        self, tenant_id: str, template: str, payload: Dict[str, Any]
    ) -> None:
        if not self.endpoint:
            logger.info(
                "notification_logged_only",
                tenant_id=tenant_id,
                template=template,
            )
            return

        client = get_http_client()
        try:
            response = await client.post(
                self.endpoint,
                json={"tenant_id": tenant_id, "template": template, "payload": payload},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "notification_delivery_failed",
                tenant_id=tenant_id,
                template=template,
                error=str(exc),
            )
            return

        logger.info("notification_dispatched", tenant_id=tenant_id, template=template)
