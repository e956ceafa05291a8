"""
Structured logging for Tracker Studio services.

Every event is rendered as one JSON line. Correlation fields (the request id,
the acting principal and anything bound with ``bind_log_context``) live in a
context variable so they follow the request through awaits without being
passed around.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structlog and the stdlib root logger for a service."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _service_name_processor(service_name),
            add_trace_context,
            add_correlation_context,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)


def _service_name_processor(service_name: str):
    def add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict
    return add_service


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the current OpenTelemetry trace and span ids, if a span is recording."""
    span = trace.get_current_span()
    if not span.is_recording():
        return event_dict

    span_context = span.get_span_context()
    if span_context.trace_id:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
    if span_context.span_id:
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Merge bound correlation fields. Explicit event keys win."""
    for key, value in _log_context.get().items():
        event_dict.setdefault(key, value)
    return event_dict


def bind_log_context(**fields: Any) -> None:
    """Bind correlation fields for the rest of the current context. ``None`` unbinds."""
    context = dict(_log_context.get())
    for key, value in fields.items():
        if value is None:
            context.pop(key, None)
        else:
            context[key] = value
    _log_context.set(context)


def get_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind the request id, generating one when the caller sent none."""
    request_id = request_id or str(uuid.uuid4())
    bind_log_context(request_id=request_id)
    return request_id


def set_principal_context(principal_id: Optional[str] = None) -> None:
    if principal_id:
        bind_log_context(principal_id=principal_id)


def clear_context() -> None:
    _log_context.set({})


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, conventionally named ``trackers.<component>``."""
    return structlog.get_logger(name)
