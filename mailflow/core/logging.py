"""Structured logging configuration using structlog."""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from mailflow.core.config import get_settings

# Event keys that may carry a subscriber address
EMAIL_KEYS = frozenset({"email", "to", "to_email", "recipient", "from_email"})

# Chatty transport loggers kept at WARNING unless debugging
NOISY_LOGGERS = ("aio_pika", "aiormq", "httpx", "httpcore", "aiosmtplib")


def mask_email(address: str) -> str:
    """Keep the first character of the local part and the domain."""
    local, sep, domain = address.partition("@")
    if not sep or not local:
        return address
    return f"{local[0]}***@{domain}"


def mask_subscriber_emails(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    for key in EMAIL_KEYS & event_dict.keys():
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = mask_email(value)
    return event_dict


def setup_logging(service: str = "api") -> None:
    """Configure structured logging for one mailflow process.

    Args:
        service: Process name bound to every log line ("api" or "worker")
    """
    settings = get_settings()
    level = getattr(logging, settings.log_level)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        mask_subscriber_emails,
    ]

    if settings.debug:
        processors: list[Processor] = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=service, app=settings.app_name)

    logging.basicConfig(format="%(name)s %(message)s", stream=sys.stdout, level=level)
    if not settings.debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Get a logger, optionally pre-bound to context such as ``tenant_id``."""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger
