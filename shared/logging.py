"""
Structured logging for the Document Gateway.

Log lines are JSON objects carrying the component logger name, the owning
service, the request id of the HTTP request being served and, when a span is
recording, its OpenTelemetry trace and span ids.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog
from opentelemetry import trace


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structlog and the stdlib root logger for ``service_name``."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=_processors(),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger(service_name).setLevel(level)


def _processors() -> List[Any]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_name,
        add_request_id,
        add_trace_ids,
        structlog.processors.JSONRenderer(),
    ]


def add_service_name(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Derive ``service`` from a ``<service>.<component>`` logger name."""
    name = event_dict.get("logger") or ""
    service, _, component = name.partition(".")
    if component:
        event_dict.setdefault("service", service)
        event_dict.setdefault("component", component)
    return event_dict


def add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def add_trace_ids(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    span = trace.get_current_span()
    if span is None or not span.is_recording():
        return event_dict
    context = span.get_span_context()
    if context.trace_id:
        event_dict["trace_id"] = f"{context.trace_id:032x}"
    if context.span_id:
        event_dict["span_id"] = f"{context.span_id:016x}"
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id for the current context, generating one if missing."""
    request_id = request_id or str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def clear_context() -> None:
    request_id_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Return a logger named ``<service>.<component>``."""
    return structlog.get_logger(name)
