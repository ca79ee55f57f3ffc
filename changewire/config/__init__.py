"""Unified configuration system for Changewire."""

from changewire.config.loader import ConfigLoadError, YAMLConfigLoader, load_config
from changewire.config.models import (
    CaptureConfig,
    ChangewireConfig,
    DatabaseConfig,
    DispatcherConfig,
    KafkaConfig,
    LoggingConfig,
    PollerConfig,
    TopicsConfig,
    WatchedTable,
)

__all__ = [
    "CaptureConfig",
    "ChangewireConfig",
    "ConfigLoadError",
    "DatabaseConfig",
    "DispatcherConfig",
    "KafkaConfig",
    "LoggingConfig",
    "PollerConfig",
    "TopicsConfig",
    "WatchedTable",
    "YAMLConfigLoader",
    "load_config",
]
