import json
import logging

import pytest

from core.config import LoggingConfig
from core.logging_setup import (
    LOGGER_ROOTS,
    JSONFormatter,
    TextFormatter,
    configure_logging,
)


def _record(msg="turn started", exc_info=None, **extra):
    logger = logging.getLogger("fusion.controller")
    return logger.makeRecord(
        logger.name, logging.INFO, __file__, 1, msg, (), exc_info, extra=extra
    )


@pytest.fixture
def _restore_handlers():
    saved = {r: list(logging.getLogger(r).handlers) for r in LOGGER_ROOTS}
    levels = {r: logging.getLogger(r).level for r in LOGGER_ROOTS}
    yield
    for r in LOGGER_ROOTS:
        lg = logging.getLogger(r)
        lg.handlers[:] = saved[r]
        lg.setLevel(levels[r])


def test_json_formatter_context_fields():
    out = json.loads(JSONFormatter().format(_record(turn_id="t1", responses=2)))
    assert out["level"] == "INFO"
    assert out["logger"] == "fusion.controller"
    assert out["message"] == "turn started"
    assert out["context"] == {"turn_id": "t1", "responses": 2}
    assert "error" not in out


def test_json_formatter_exception_block():
    try:
        raise ValueError("bad thing")
    except ValueError:
        import sys

        rec = _record("failed", exc_info=sys.exc_info())
    out = json.loads(JSONFormatter().format(rec))
    assert out["error"] == {"type": "ValueError", "message": "bad thing"}
    assert "ValueError" in out["stack_trace"]


def test_text_formatter_appends_extras():
    line = TextFormatter().format(_record(turn_id="t9"))
    assert "| INFO | fusion.controller | turn started" in line
    assert line.endswith("turn_id=t9")


def test_configure_logging_replaces_own_handler(_restore_handlers):
    configure_logging(LoggingConfig(level="debug", format="json"))
    configure_logging(LoggingConfig(level="warn", format="text"))
    for root in LOGGER_ROOTS:
        lg = logging.getLogger(root)
        own = [h for h in lg.handlers if getattr(h, "_natstream_handler", False)]
        assert len(own) == 1
        assert isinstance(own[0].formatter, TextFormatter)
        assert lg.level == logging.WARNING
