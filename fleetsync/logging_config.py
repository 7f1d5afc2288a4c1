"""
FleetSync structured logging configuration.

Provides consistent structured logging for the service with:
- JSON formatting for log aggregation
- Per-event context (agent id, event type) bound by the dispatcher workers
- Service context
"""

import logging
from typing import Any, Dict

import structlog


def configure_logging(service_name: str, log_level: str = "INFO") -> None:
    """
    Configure structured logging for the service.

    Args:
        service_name: Name of the service (e.g., "fleetsync")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context(service_name),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def add_service_context(service_name: str):
    """Add service context to all log messages."""
    def processor(logger, method_name, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict["service"] = service_name
        return event_dict
    return processor


def bind_event_context(**values: Any) -> None:
    """Bind per-event fields (agent_id, event_type, ...) for the current task."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**{k: v for k, v in values.items() if v is not None})


def clear_event_context() -> None:
    structlog.contextvars.clear_contextvars()
