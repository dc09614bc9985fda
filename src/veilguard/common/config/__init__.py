"""Configuration package."""

from veilguard.common.config.settings import (
    Config,
    Environment,
    LogLevel,
    StorageBackend,
    get_config,
    reset_config,
)

__all__ = [
    "Config",
    "Environment",
    "LogLevel",
    "StorageBackend",
    "get_config",
    "reset_config",
]
