"""Structured logging for tickerwatch.

The dashboard owns the terminal, so logs can be sent to a file instead of
stderr. Events are snake_case names with keyword fields; fields bound with
structlog.contextvars (the ingestion tick number) follow the coroutine.
"""

import logging
import os
from decimal import Decimal
from enum import Enum

import structlog


def _plain_values(
    logger: logging.Logger, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Render Decimal and Enum fields as plain strings for every renderer."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
        elif isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    log_file: str | None = None,
    log_format: str | None = None,
) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        log_level: Root level name.
        log_file: Append to this file instead of writing to stderr.
        log_format: "json" or "console"; defaults to the LOG_FORMAT
            environment variable, then "console".
    """
    log_format = (log_format or os.environ.get("LOG_FORMAT", "console")).lower()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _plain_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        # No colour codes in a log file
        renderer = structlog.dev.ConsoleRenderer(colors=log_file is None)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler: logging.Handler
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Both libraries log every request/proxied call at DEBUG
    for noisy in ("aiosqlite", "ccxt"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger with the given name."""
    return structlog.get_logger(name)
