"""
Unified Error Governance

Centrally handles exception classification, structured logging, metrics and
OpenTelemetry span recording so every API error has the same envelope.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from opentelemetry import trace

from app.shared.core.config import get_settings
from app.shared.core.exceptions import CreditlineException
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

# Codes whose message and details are safe to return verbatim in production.
SAFE_CODES = {
    "not_found",
    "entity_not_found",
    "campaign_not_found",
    "validation_error",
    "credit_limit_exceeded",
    "insufficient_credits",
    "invalid_signature",
    "reconciliation_drift",
    "invalid_transition",
    "orphan_records",
    "already_processed",
}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """
    Classifies and records exceptions, returning a standardized JSON response.
    """
    error_id = error_id or str(uuid4())
    settings = get_settings()
    is_prod = settings.is_production

    if isinstance(exc, CreditlineException):
        app_exc = exc
        if is_prod and app_exc.code not in SAFE_CODES:
            app_exc.message = "An error occurred while processing your request"
    elif isinstance(exc, ValueError):
        # Business logic validation errors should be 400
        msg = "Invalid request parameters" if is_prod else str(exc)
        app_exc = CreditlineException(
            message=msg,
            code="value_error",
            status_code=400,
        )
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        app_exc = CreditlineException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    with tracer.start_as_current_span("handle_exception") as span:
        span.set_attribute("error.id", error_id)
        span.set_attribute("error.code", app_exc.code)
        span.set_attribute("http.path", request.url.path)
        span.set_attribute("http.method", request.method)
        span.record_exception(exc)
        span.set_status(trace.Status(trace.StatusCode.ERROR, app_exc.code))

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=app_exc.status_code,
    ).inc()

    log_method = logger.error if app_exc.status_code >= 500 else logger.warning
    log_method(
        "api_error",
        error_id=error_id,
        code=app_exc.code,
        message=app_exc.message,
        status_code=app_exc.status_code,
        path=request.url.path,
        details=app_exc.details,
    )

    response_details: Optional[Dict[str, Any]] = app_exc.details
    if is_prod and app_exc.code not in SAFE_CODES:
        response_details = None

    return JSONResponse(
        status_code=app_exc.status_code,
        content={
            "error": {
                "message": app_exc.message,
                "code": app_exc.code,
                "id": error_id,
                "details": response_details if response_details else None,
            }
        },
    )
