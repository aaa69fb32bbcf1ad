from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.domain.billing.gateway import get_payment_gateway
from app.modules.billing.domain.billing.webhook_processor import WebhookProcessor
from app.shared.core.exceptions import SignatureError


async def process_gateway_webhook(
    request: Request,
    db: AsyncSession,
    *,
    provider: str,
    logger: Any,
) -> JSONResponse:
    """
    Verify and process one gateway delivery.

    200 for processed and skipped events. 409 on reconciliation drift, and
    while another worker still holds the event, so the gateway redelivers. Signature and
    configuration failures propagate as CreditlineExceptions (401/500).
    """
    gateway = get_payment_gateway(provider)
    signature = request.headers.get(gateway.signature_header, "")
    if not signature:
        logger.warning("webhook_missing_signature", provider=provider)
        raise SignatureError(
            f"Missing {gateway.signature_header} header",
            details={"provider": provider},
        )

    payload = await request.body()
    processor = WebhookProcessor(db, gateway)
    outcome = await processor.handle(payload, signature)

    status_code = 200 if outcome.get("processed") else 409
    if outcome.get("skipped"):
        logger.info(
            "webhook_event_skipped",
            provider=provider,
            event_id=outcome.get("event_id"),
            reason=outcome.get("reason"),
        )
    return JSONResponse(status_code=status_code, content=outcome)
