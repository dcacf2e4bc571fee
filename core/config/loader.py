"""Configuration loading & validation.

Precedence (last wins): base.yaml → overrides.local.yaml → ENV
(NATSTREAM__SECTION__KEY, nested with double underscores).

- `schema_version` missing → assume 1 (logged).
- Each known section is validated by its pydantic schema; unknown keys
  are rejected.
- Cross-field bounds are checked before schema validation so violations
  are reported with a taxonomy code and a metric.
"""
from __future__ import annotations

import logging
import os
import pathlib
import threading
from functools import lru_cache
from typing import Any, Dict, Type

import yaml
from core import metrics
from core.errors import validate_error_type
from pydantic import BaseModel, ConfigDict

from .schemas.fusion import FusionConfig
from .schemas.observability import LoggingConfig


class AggregatedConfig(BaseModel):
    schema_version: int = 1
    fusion: FusionConfig = FusionConfig()
    logging: LoggingConfig = LoggingConfig()

    model_config = ConfigDict(extra="forbid")


DEFAULT_CONFIG_DIR = "configs"
ENV_PREFIX = "NATSTREAM__"

SUB_SCHEMA_CLASSES: Dict[str, Type[BaseModel]] = {
    "fusion": FusionConfig,
    "logging": LoggingConfig,
}

log = logging.getLogger("fusion.config")


class ConfigError(Exception):
    pass


def _load_yaml_if_exists(path: pathlib.Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _merge_dict(
    base: Dict[str, Any], override: Dict[str, Any]
) -> Dict[str, Any]:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            base[k] = _merge_dict(base[k], v)
        else:
            base[k] = v
    return base


def _cast_env(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        return int(value)
    except ValueError:
        try:
            return float(value)
        except ValueError:
            return value


# Leaves that must stay strings even when the env value looks numeric.
_STRING_LEAVES = {"api_key", "endpoint_url", "model", "fallback_text"}


def _apply_env(cfg: Dict[str, Any]) -> None:
    prefix_len = len(ENV_PREFIX)
    for env_key, value in os.environ.items():
        if not env_key.startswith(ENV_PREFIX):
            continue
        path_parts = env_key[prefix_len:].lower().split("__")
        target = cfg
        for part in path_parts[:-1]:
            if part not in target or not isinstance(target[part], dict):
                target[part] = {}
            target = target[part]
        leaf = path_parts[-1]
        target[leaf] = value if leaf in _STRING_LEAVES else _cast_env(value)
        dotted_path = ".".join(path_parts)
        metrics.inc("env_override_total", {"path": dotted_path})
        log.info(
            "[config-env-override] path=%s value=*** source=env", dotted_path
        )


_lock = threading.Lock()


def _resolve_config_dir() -> pathlib.Path:
    """Resolve config directory each call honoring env var changes."""
    return pathlib.Path(
        os.getenv("NATSTREAM_CONFIG_DIR", DEFAULT_CONFIG_DIR)
    )


def _migrate_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
    if "schema_version" not in data:
        log.info("[config-migration] schema_version missing → assuming 1")
        data["schema_version"] = 1
    return data


def _validate_sub_schemas(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Validate each known section via its schema class."""
    validated: Dict[str, Any] = {}
    for name, cls in SUB_SCHEMA_CLASSES.items():
        if name in raw:
            try:
                validated[name] = cls.model_validate(raw[name])
            except Exception as e:  # noqa: BLE001
                metrics.inc(
                    "config_validation_errors_total",
                    {"path": name, "code": "config-invalid"},
                )
                raise ConfigError(
                    f"Validation failed for section '{name}': {e}"
                ) from e
    return validated


# (dotted path, predicate, message); values absent from raw are skipped.
_BOUNDS = [
    (
        "fusion.delivery.max_tokens",
        lambda v: v > 0,
        ">0 required",
    ),
    (
        "fusion.loop.idle_bound",
        lambda v: v > 0,
        ">0 required",
    ),
    (
        "fusion.loop.max_responses",
        lambda v: v > 0,
        ">0 required",
    ),
    (
        "fusion.loop.char_budget",
        lambda v: v > 0,
        ">0 required",
    ),
    (
        "fusion.loop.poll_interval_ms",
        lambda v: v >= 0,
        ">=0 required",
    ),
    (
        "fusion.pacing.word_delay_ms",
        lambda v: v >= 0,
        ">=0 required",
    ),
    (
        "fusion.pacing.max_buffered_fragments",
        lambda v: v > 0,
        ">0 required",
    ),
]


def _lookup(raw: Dict[str, Any], dotted: str) -> Any:
    node: Any = raw
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _normalize_and_validate(raw: Dict[str, Any]) -> None:
    """Apply bounds validation.

    Emits metrics on violations and raises ConfigError if any hard errors.
    Temperature range is already validated by schema.
    """
    errors: list[tuple[str, str, str]] = []  # (path, code, msg)
    for path, ok, msg in _BOUNDS:
        value = _lookup(raw, path)
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            continue
        if not ok(value):
            errors.append((path, "config-out-of-range", msg))

    if errors:
        for path, code, _ in errors:
            metrics.inc(
                "config_validation_errors_total",
                {"path": path, "code": validate_error_type(code)},
            )
        details = ", ".join(f"{p}:{c}:{m}" for p, c, m in errors)
        raise ConfigError(f"config validation failed: {details}")


@lru_cache(maxsize=1)
def get_config() -> AggregatedConfig:  # noqa: D401
    with _lock:
        cfg_dir = _resolve_config_dir()
        base_cfg = _load_yaml_if_exists(cfg_dir / "base.yaml")
        overrides_cfg = _load_yaml_if_exists(cfg_dir / "overrides.local.yaml")
        merged = _merge_dict(base_cfg, overrides_cfg)
        _apply_env(merged)
        migrated = _migrate_legacy(merged)
        _normalize_and_validate(migrated)
        validated_sub = _validate_sub_schemas(migrated)
        try:
            agg = AggregatedConfig.model_validate(
                {"schema_version": migrated.get("schema_version", 1)}
                | {
                    k: v
                    for k, v in migrated.items()
                    if k not in SUB_SCHEMA_CLASSES
                }
            )
        except Exception as e:  # noqa: BLE001
            raise ConfigError(str(e)) from e
        for k, v in validated_sub.items():
            setattr(agg, k, v)
        return agg


def clear_config_cache() -> None:
    """Clear cached config (primarily for tests)."""
    get_config.cache_clear()


def as_dict() -> Dict[str, Any]:
    return get_config().model_dump()
