"""
Trace correlation helpers.

Span export is configured by the deployment (OTel SDK / collector); the
application only reads the active span context so logs and error payloads
can be joined to traces.
"""

from typing import Optional

from opentelemetry import trace


def get_tracer(name: str) -> trace.Tracer:
    """Returns a tracer instance for manual instrumentation."""
    return trace.get_tracer(name)


def get_current_trace_id() -> Optional[str]:
    """Return the active trace id as 32 hex chars, or None outside a span."""
    span = trace.get_current_span()
    context = span.get_span_context()
    if not context or not context.is_valid:
        return None
    return format(context.trace_id, "032x")
