"""Configuration loading for the relay pipeline.

Configuration is a single YAML file (config/config.yaml by default,
overridable with $RELAY_CONFIG) with ${VAR} expansion.

Usage:
    >>> from config import load_config
    >>> config = load_config()
    >>> config.batching.batch_size
    1000
"""

from config.config import (
    BatchingConfig,
    BusConfig,
    HealthConfig,
    LoggingConfig,
    MetricsConfig,
    RelayConfig,
    SinkConfig,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    "RelayConfig",
    "BusConfig",
    "SinkConfig",
    "BatchingConfig",
    "LoggingConfig",
    "HealthConfig",
    "MetricsConfig",
    "load_config",
    "get_config",
    "set_config",
    "reset_config",
]
