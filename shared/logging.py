"""
Structured logging for the cluster access gatekeeper.

Every event carries the request id, the authenticated user and, while a
registration or a token check is in flight, the service being registered
or the signing key id. Credential-bearing fields never reach the output.
"""

import sys
import structlog
import logging
import uuid
from typing import Any, Dict, Optional
from contextvars import ContextVar

from opentelemetry import trace

REDACTED = "[REDACTED]"

# Event keys whose values are credentials
SENSITIVE_KEYS = frozenset({
    "token",
    "access_token",
    "refresh_token",
    "install_token",
    "client_secret",
    "password",
    "authorization",
})

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
username_var: ContextVar[Optional[str]] = ContextVar('username', default=None)
gatekeeper_context_var: ContextVar[Dict[str, str]] = ContextVar('gatekeeper_context', default={})


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structlog to render JSON lines on stdout."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_component,
            add_trace_context,
            add_correlation_context,
            redact_secrets,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Split "gatekeeper.registry" style logger names into service and component."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        service, component = logger_name.split(".", 1)
        event_dict["service"] = service
        event_dict["component"] = component
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request, user and gatekeeper fields; explicit event fields win."""
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)

    user_id = user_id_var.get()
    if user_id:
        event_dict.setdefault("user_id", user_id)

    username = username_var.get()
    if username:
        event_dict.setdefault("username", username)

    for key, value in gatekeeper_context_var.get().items():
        event_dict.setdefault(key, value)

    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Replace the value of any credential-bearing field."""
    for key in event_dict:
        if key.lower() in SENSITIVE_KEYS and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_user_context(user_id: Optional[str] = None, username: Optional[str] = None):
    if user_id:
        user_id_var.set(user_id)
    if username:
        username_var.set(username)


def bind_gatekeeper_context(*, kid: Optional[str] = None, service_name: Optional[str] = None,
                            service_type: Optional[str] = None) -> Dict[str, str]:
    """Attach the signing key id or the registering service to later events.

    Fields left as None keep their current value.
    """
    context = dict(gatekeeper_context_var.get())
    for key, value in (("kid", kid), ("service_name", service_name), ("service_type", service_type)):
        if value is not None:
            context[key] = value
    gatekeeper_context_var.set(context)
    return context


def clear_context():
    """Reset all per-request fields."""
    request_id_var.set(None)
    user_id_var.set(None)
    username_var.set(None)
    gatekeeper_context_var.set({})


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
