"""Config subsystem public API.

Provides:
    get_config() -> AggregatedConfig (schema_version + fusion + logging)
    as_dict()    -> dict representation
    ConfigError  -> raised on validation / unknown key
"""

from .loader import (  # noqa: F401
    AggregatedConfig,
    get_config,
    as_dict,
    ConfigError,
    clear_config_cache,
)
from .schemas.fusion import FusionConfig  # noqa: F401
from .schemas.observability import LoggingConfig  # noqa: F401


__all__ = [
    "AggregatedConfig",
    "FusionConfig",
    "LoggingConfig",
    "get_config",
    "as_dict",
    "ConfigError",
    "clear_config_cache",
]
