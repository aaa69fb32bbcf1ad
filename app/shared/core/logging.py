import re
import sys
import structlog
import logging
from typing import Any, cast
from app.shared.core.config import get_settings

_EMAIL_REGEX = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
_SENSITIVE_FIELDS = {
    "password",
    "secret",
    "signature",
    "authorization",
    "api_key",
    "card_number",
    "webhook_secret",
    "secret_key",
}
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_key", "_signature")


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _SENSITIVE_FIELDS:
        return True
    return key_norm.endswith(_SENSITIVE_SUFFIXES)


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: ("[REDACTED]" if _is_sensitive_key(k) else _redact(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_redact(item) for item in data]
    if isinstance(data, str):
        return _EMAIL_REGEX.sub("[EMAIL_REDACTED]", data)
    return data


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Redact customer emails and gateway secrets before rendering.
    Webhook payloads are logged on failure, so this runs on every event.
    """
    redacted = _redact(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def add_otel_trace_id(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Integrate OTel Trace IDs into structured logs."""
    from app.shared.core.tracing import get_current_trace_id

    trace_id = get_current_trace_id()
    if trace_id:
        event_dict["trace_id"] = trace_id
    return event_dict


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_otel_trace_id,
        pii_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route uvicorn and SQLAlchemy logs through the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )


def audit_log(
    event: str,
    user_id: str | None,
    tenant_id: str,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Default audit sink for ledger-affecting events.
    Enforces a consistent schema for SIEM ingestion.
    """
    logger = structlog.get_logger("audit")
    logger.info(
        event,
        user_id=str(user_id) if user_id else "system",
        tenant_id=str(tenant_id),
        details=details or {},
    )
