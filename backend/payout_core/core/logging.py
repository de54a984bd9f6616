"""
Structured logging for the payout core.

Services log through ``get_logger(__name__)`` and pass identifiers in
``extra={...}``; ``lift_extra`` merges them into the top level of the event so
``payout_id``, ``attempt_id`` and ``rail_operation_id`` are queryable fields
rather than a nested blob. Identifiers bound with ``bind_payout_context`` ride
along on every entry emitted by the current task.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

import structlog

from .config import settings

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

PAYOUT_CONTEXT_KEYS = ("payout_id", "attempt_id", "rail_operation_id")

_FRAMEWORK_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def add_correlation_id(logger, method_name, event_dict):
    correlation_id = correlation_id_var.get()
    if correlation_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def lift_extra(logger, method_name, event_dict):
    """Flatten ``extra={...}`` into the event; explicit keys win on collision."""
    extra = event_dict.pop("extra", None)
    if isinstance(extra, dict):
        for key, value in extra.items():
            event_dict.setdefault(key, value)
    return event_dict


def configure_logging(log_level: Optional[str] = None) -> None:
    level_name = (log_level or settings.log_level).upper()
    level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    for name in _FRAMEWORK_LOGGERS:
        framework_logger = logging.getLogger(name)
        framework_logger.handlers = []
        framework_logger.propagate = True
        framework_logger.setLevel(level)

    # SQL echo only when debugging; statement logs would carry payout data.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.debug else logging.WARNING)

    renderer = structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_correlation_id,
            lift_extra,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_correlation_id() -> str:
    """Current correlation id, minting one for work that did not come in over HTTP."""
    correlation_id = correlation_id_var.get()
    if not correlation_id:
        correlation_id = str(uuid.uuid4())
        correlation_id_var.set(correlation_id)
    return correlation_id


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def bind_payout_context(**values) -> None:
    structlog.contextvars.bind_contextvars(
        **{key: str(value) for key, value in values.items() if value is not None}
    )


def clear_payout_context() -> None:
    structlog.contextvars.unbind_contextvars(*PAYOUT_CONTEXT_KEYS)


logger = structlog.get_logger("payout_core")


def get_logger(name: Optional[str] = None):
    if name:
        return structlog.get_logger(name)
    return logger
