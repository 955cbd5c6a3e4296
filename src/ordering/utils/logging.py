"""Logging for the ordering engine.

structlog renders events on top of a stdlib console handler: JSON in
production and staging, a rich console view elsewhere. ``LOG_FORMAT`` forces
either one.

Events emitted while a command works on an order carry its ``order_id`` and,
once known, the gateway ``transaction_id``. Command handlers bind them with
``order_context`` so the services below do not have to repeat them.
"""

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

# Event fields never written out in clear
SECRET_FIELDS = frozenset({"client_secret", "signature", "x_gateway_signature", "authorization"})

_LEVELS = {
    "production": "INFO",
    "staging": "INFO",
    "development": "DEBUG",
    "test": "WARNING",
}


def _environment() -> str:
    return (os.getenv("ENVIRONMENT") or os.getenv("PROTEAN_ENV") or "development").lower()


def get_log_level() -> str:
    return os.getenv("LOG_LEVEL", _LEVELS.get(_environment(), "INFO")).upper()


def use_json_output() -> bool:
    log_format = os.getenv("LOG_FORMAT")
    if log_format:
        return log_format.lower() == "json"
    return _environment() in ("production", "staging")


def mask_secrets(logger, method_name: str, event_dict: dict) -> dict:
    """Replace gateway secrets in an event with a placeholder."""
    for key in SECRET_FIELDS & event_dict.keys():
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def setup_stdlib_logging(stream=None) -> None:
    """Send every record to one console handler; structlog does the formatting."""
    log_level = get_log_level()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    logging.getLogger("protean").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def setup_structlog(json_output: bool | None = None) -> None:
    if json_output is None:
        json_output = use_json_output()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        mask_secrets,
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                exception_formatter=structlog.dev.RichTracebackFormatter(show_locals=False, max_frames=2),
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging() -> None:
    setup_stdlib_logging()
    setup_structlog()


def add_context(**kwargs: Any) -> None:
    """Bind request-wide values (request id, caller) for the rest of the request."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def order_context(order_id: str | None = None, transaction_id: str | None = None, **extra: Any) -> Iterator[None]:
    """Attach order identifiers to every event logged inside the block.

    Values that are None are left out. Whatever was bound before the block is
    restored on exit.
    """
    values = {"order_id": order_id, "transaction_id": transaction_id, **extra}
    with structlog.contextvars.bound_contextvars(**{k: v for k, v in values.items() if v is not None}):
        yield
