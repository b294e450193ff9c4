"""
Structured Logging with Structlog.

JSON logs keyed by event name. Request and user ids are bound per request
through log_context, and credentials never reach the output.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from app.config import settings

# Event keys whose values are credentials or signed material
SECRET_KEYS = frozenset(
    {"authorization", "api_key", "token", "cron_secret", "stripe_signature", "webhook_secret"}
)

# Libraries that log every outbound request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "stripe")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def mask_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace credential values with a fixed marker."""
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def setup_logging(log_level: str | None = None) -> None:
    """
    Configure structlog over the standard library root logger.

    ``log_level`` overrides LOG_LEVEL; the expiry job passes DEBUG for --verbose.
    A JSON line looks like:
    {
        "event": "credit_spend_succeeded",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "app.services.credit_ledger",
        "service": "workflow-generation-api",
        "request_id": "req-123",
        "user_id": "user-1",
        "credits_after": 41
    }
    """
    level = (log_level or settings.log_level).upper()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level),
    )
    if level != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        mask_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if level == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger for a module: ``logger = get_logger(__name__)``."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind structured context for the duration of a block.

    Usage:
        with log_context(request_id=request_id, user_id=user_id):
            logger.info("generation_started")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
