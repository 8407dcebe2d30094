from __future__ import annotations

import logging
import time
from logging.config import dictConfig
from typing import Any, Iterable, Sequence

from settings import get_settings

# Context attached through ``extra=`` by the poller, executor and history store.
ENGINE_EXTRA_KEYS = (
    "domain",
    "generation",
    "command",
    "command_id",
    "state",
    "target",
    "elapsed_ms",
    "row_count",
    "error",
)

_NOISY_LOGGERS = ("paramiko", "httpx")

_configured = False


def _context_value(value: Any) -> str:
    text = str(value)
    return repr(text) if not text or any(ch.isspace() for ch in text) else text


class ContextualFormatter(logging.Formatter):
    """Appends ``key=value`` pairs for known context keys, timestamps in UTC."""

    converter = time.gmtime

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        extra_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self._extra_keys: Sequence[str] = tuple(extra_keys or ENGINE_EXTRA_KEYS)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context: list[str] = []
        for key in self._extra_keys:
            value = getattr(record, key, None)
            if value is not None:
                context.append(f"{key}={_context_value(value)}")
        if context:
            return f"{message} | {' '.join(context)}"
        return message


def configure_logging(level: str | int | None = None) -> None:
    """Install the contextual handler once; paramiko and httpx stay at WARNING."""
    global _configured
    if _configured:
        return

    log_level = level if level is not None else get_settings().log_level

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "contextual": {
                    "()": "logging_config.ContextualFormatter",
                    "fmt": "%(asctime)sZ | %(levelname)s | %(threadName)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                    "extra_keys": list(ENGINE_EXTRA_KEYS),
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": "contextual",
                }
            },
            "loggers": {name: {"level": "WARNING"} for name in _NOISY_LOGGERS},
            "root": {"handlers": ["default"], "level": log_level},
        }
    )

    _configured = True
