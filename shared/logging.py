"""
Shared logging configuration for the Shopping Mesh services.

Each process hosts one service, so the service name is fixed when logging is
configured. Request and user ids are bound per request through structlog's
contextvars and merged into every event logged while the request runs.
"""

import logging
import sys
import uuid
from typing import Any, Callable, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars

Processor = Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]


def service_context(service_name: str) -> Processor:
    """Processor stamping every event with ``service``; the logger name stays the component."""

    def add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured JSON logging for the service running in this process."""
    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            service_context(service_name),
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


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind the request id for the rest of the request; generated when absent."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    bind_contextvars(request_id=request_id)
    return request_id


def set_user_context(user_id: Optional[str] = None):
    if user_id:
        bind_contextvars(user_id=user_id)


def clear_context():
    clear_contextvars()


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
