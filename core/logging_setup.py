"""Leveled logging for fusion components.

Component loggers live under two roots: ``fusion.*`` (core library) and
``natstream.*`` (HTTP app). `configure_logging` installs exactly one
stdout handler per root; calling it again replaces that handler.

Lifecycle log lines pass structured fields via ``extra=`` (turn_id,
stop_reason, ...). The JSON formatter emits them under ``context``; the
text formatter appends them as ``key=value`` pairs.
"""
from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import datetime, timezone

from core.config.schemas.observability import LoggingConfig

LOGGER_ROOTS = ("fusion", "natstream")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

# Attributes present on every LogRecord; anything else came from extra=.
_RESERVED = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def _extra_fields(record: logging.LogRecord) -> dict:
    return {
        k: v
        for k, v in record.__dict__.items()
        if k not in _RESERVED and not k.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        out = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra = _extra_fields(record)
        if extra:
            out["context"] = extra
        if record.exc_info:
            out["error"] = {
                "type": record.exc_info[0].__name__
                if record.exc_info[0] else None,
                "message": str(record.exc_info[1]),
            }
            out["stack_trace"] = "".join(
                traceback.format_exception(*record.exc_info)
            )
        return json.dumps(out, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra = _extra_fields(record)
        if extra:
            line += " | " + " ".join(f"{k}={v}" for k, v in extra.items())
        return line


def configure_logging(cfg: LoggingConfig | None = None) -> None:
    cfg = cfg or LoggingConfig()
    level = _LEVELS.get(cfg.level, logging.INFO)
    formatter = JSONFormatter() if cfg.format == "json" else TextFormatter()
    for root in LOGGER_ROOTS:
        logger = logging.getLogger(root)
        logger.setLevel(level)
        for h in list(logger.handlers):
            if getattr(h, "_natstream_handler", False):
                logger.removeHandler(h)
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler._natstream_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)


__all__ = ["configure_logging", "JSONFormatter", "TextFormatter"]
