import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import CreditlineException
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware
from app.shared.core.ops_metrics import API_ERRORS_TOTAL
from app.shared.db.session import dispose_db_runtime

# Ensure all models are registered with SQLAlchemy
from app import models as _models  # noqa: F401

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME)

    from app.shared.core.http import close_http_client, init_http_client

    # Gateway lookups and notifications share one pooled client.
    await init_http_client()

    yield

    logger.info("app_shutting_down")

    # Close HTTP pool first (prevents new requests while shutting down)
    await close_http_client()

    await dispose_db_runtime()


creditline_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
app: FastAPI = creditline_app  # noqa: A001

__all__ = ["app", "creditline_app", "lifespan"]


@creditline_app.exception_handler(CreditlineException)
async def creditline_exception_handler(
    request: Request, exc: CreditlineException
) -> JSONResponse:
    """Handle custom application exceptions."""
    return handle_exception(request, exc)


@creditline_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if settings.is_production and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": detail_text,
                "code": "http_error",
                "id": getattr(request.state, "request_id", None),
                "details": None,
            }
        },
    )


@creditline_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=422
    ).inc()
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "The request body or parameters are invalid.",
                "code": "request_validation_error",
                "id": getattr(request.state, "request_id", None),
                "details": {"errors": _sanitize_errors(exc.errors())},
            }
        },
    )


@creditline_app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Handle business logic ValueErrors via central governance."""
    return handle_exception(request, exc)


@creditline_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled exceptions get the same sanitized envelope and an error id."""
    return handle_exception(request, exc)


register_lifecycle_routes(
    creditline_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)

creditline_app.add_middleware(RequestIDMiddleware)

register_api_routers(creditline_app)
