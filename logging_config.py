from __future__ import annotations

import logging
import time
from logging.config import dictConfig
from typing import Any, Iterable

from settings import get_settings

# Context keys rendered after the message, in this order.
CONTEXT_KEYS = (
    "device_id",
    "topic",
    "outcome",
    "sink",
    "reason",
    "aged_deleted",
    "excess_deleted",
    "deleted",
    "error_count",
    "duration_ms",
    "record_count",
    "device_count",
)

LOG_FORMAT = "%(asctime)sZ | %(levelname)s | %(threadName)s | %(name)s | %(message)s"

_configured = False


def _render_value(value: Any) -> str:
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(str(item) for item in value)
    text = str(value)
    if not text or any(char.isspace() for char in text):
        return repr(text)
    return text


class ContextualFormatter(logging.Formatter):
    """Render bridge log records with their ``extra=`` context as ``key=value`` pairs.

    Timestamps are UTC. Sequence values such as the failed sinks of a write
    are comma-joined and free-text values such as error reasons are quoted, so
    each context pair stays one token wide.
    """

    converter = time.gmtime

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        context_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self.context_keys = tuple(context_keys or CONTEXT_KEYS)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = " ".join(
            f"{key}={_render_value(getattr(record, key))}"
            for key in self.context_keys
            if getattr(record, key, None) is not None
        )
        return f"{message} | {context}" if context else message


def configure_logging(level: str | int | None = None, force: bool = False) -> None:
    """Configure process-wide logging for the bridge, API and CLI."""
    global _configured
    if _configured and not force:
        return

    log_level = level if level is not None else get_settings().log_level

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "contextual": {
                    "()": "logging_config.ContextualFormatter",
                    "fmt": LOG_FORMAT,
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                    "context_keys": list(CONTEXT_KEYS),
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "contextual",
                }
            },
            "loggers": {
                # paho logs every PUBACK at DEBUG
                "paho": {"level": "WARNING"},
                "httpx": {"level": "WARNING"},
            },
            "root": {"handlers": ["console"], "level": log_level},
        }
    )

    _configured = True
