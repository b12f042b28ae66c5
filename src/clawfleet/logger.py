"""Structured logging for clawfleet.

``LOG_LEVEL`` and ``LOG_FORMAT`` come straight from the environment because
``clawfleet.config`` imports this module. ``LOG_FORMAT=json`` switches to one
JSON object per line for log shippers; anything else renders for a console.
``set_level`` applies ``[logging] level`` once Settings are loaded.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog


def _level(name: str) -> int:
    return getattr(logging, name.strip().upper(), logging.INFO)


def _renderers() -> list[structlog.typing.Processor]:
    if os.environ.get("LOG_FORMAT", "").lower() == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]


def _configure() -> structlog.stdlib.BoundLogger:
    logging.basicConfig(
        level=_level(os.environ.get("LOG_LEVEL", "INFO")),
        format="%(message)s",
        stream=sys.stderr,
    )
    # aiohttp logs every request at INFO; keep the control-plane chatter out
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    shared: list[structlog.typing.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    structlog.configure(
        processors=[*shared, *_renderers()],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("clawfleet")


logger = _configure()


def set_level(level_name: str) -> None:
    logging.getLogger().setLevel(_level(level_name))


@contextmanager
def bound_operation(**context: object) -> Iterator[None]:
    """Attach ``context`` (instance id, backend, action) to every log line inside."""
    with structlog.contextvars.bound_contextvars(**context):
        yield


def _log_uncaught(exc_type, exc_value, exc_tb) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    logger.critical("Unhandled exception, exiting", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _log_uncaught
