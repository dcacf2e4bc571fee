"""Pytest configuration ensuring project root is importable.

Adds repository root and src/ to sys.path explicitly to avoid
interpreter/path quirks.
"""
from __future__ import annotations

import sys
from pathlib import Path
import os
import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def _isolate_config_env():  # noqa: D401
    """Ensure global config/env side effects do not leak between tests.

    - Clear aggregated config cache between tests
    - Restore NATSTREAM_CONFIG_DIR to original value
    """
    from core.config import clear_config_cache  # local import

    prev = os.environ.get("NATSTREAM_CONFIG_DIR")
    clear_config_cache()
    try:
        yield
    finally:
        clear_config_cache()
        if prev is None:
            os.environ.pop("NATSTREAM_CONFIG_DIR", None)
        else:
            os.environ["NATSTREAM_CONFIG_DIR"] = prev


@pytest.fixture
def fusion_cfg():
    """Fast fusion config: no pacing delay, short idle bound."""
    from core.config.schemas.fusion import FusionConfig

    return FusionConfig.model_validate(
        {
            "delivery": {"endpoint_url": "http://delivery.test"},
            "pacing": {"word_delay_ms": 0},
            "loop": {"poll_interval_ms": 5, "idle_bound": 20},
        }
    )
