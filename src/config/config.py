"""Relay pipeline configuration from YAML file.

Loads from config/config.yaml with all settings in one place:
- bus: Kafka connection and subscription
- sink: destination table and commit settings
- batching: size/time flush triggers and channel capacity
- logging, health, metrics: ambient service settings

Environment variables ARE supported using ${VAR_NAME} and
${VAR_NAME:-default} syntax in YAML files.
"""

import json
import logging
import os
import re
import sys
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from core.errors.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Default config file: config/config.yaml in src/ directory
DEFAULT_CONFIG_FILE = Path(__file__).parent / "config.yaml"
CONFIG_PATH_ENV_VAR = "RELAY_CONFIG"

SECRET_KEYS = frozenset(
    {
        "sasl_password",
        "account_key",
        "sas_token",
        "client_secret",
        "aws_secret_access_key",
        "token",
        "bearer_token",
        "password",
    }
)
MASK = "********"

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
VALID_LOG_FORMATS = ["json", "console"]
VALID_SINK_TYPES = ["delta", "memory"]
VALID_COMPRESSIONS = ["UNCOMPRESSED", "SNAPPY", "GZIP", "BROTLI", "LZ4", "ZSTD", "LZ4_RAW"]
VALID_OFFSET_RESETS = ["earliest", "latest"]
VALID_SECURITY_PROTOCOLS = ["PLAINTEXT", "SSL", "SASL_PLAINTEXT", "SASL_SSL"]
VALID_SASL_MECHANISMS = ["PLAIN", "SCRAM-SHA-256", "SCRAM-SHA-512"]


def load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep merge overlay into base dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _mask_secrets(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            key: (MASK if key in SECRET_KEYS and value else _mask_secrets(value))
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_mask_secrets(item) for item in data]
    return data


@dataclass
class BusConfig:
    """Kafka subscription settings.

    ``group_name`` is the consumer group: replicas sharing it split the
    partitions between them, and committed offsets are stored under it so
    a restarted process resumes where the group left off.
    """

    bootstrap_servers: str = ""
    topic_pattern: str = ""
    topics: list[str] = field(default_factory=list)
    group_name: str = "relay-ingest"
    durable_name: str = "relay-ingest"
    instance_id: str = ""
    auto_offset_reset: str = "earliest"
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str = "PLAIN"
    sasl_username: str = ""
    sasl_password: str = ""
    fetch_max_records: int = 500
    fetch_timeout_ms: int = 1000
    session_timeout_ms: int = 45000
    max_poll_interval_ms: int = 300000
    request_timeout_ms: int = 40000
    error_backoff_seconds: float = 5.0
    max_redeliveries: int = 3

    @property
    def client_id(self) -> str:
        if self.instance_id:
            return f"{self.durable_name}-{self.instance_id}"
        return self.durable_name


@dataclass
class SinkConfig:
    """Destination table settings."""

    type: str = "delta"
    table_uri: str = ""
    table_name: str = "messages"
    storage_options: dict[str, str] = field(default_factory=dict)
    compression: str = "ZSTD"
    max_execution_seconds: float = 60.0
    partition_key_segment: int = 3
    subject_delimiter: str = "."


@dataclass
class BatchingConfig:
    """Flush triggers. ``channel_capacity`` defaults to ``batch_size``."""

    batch_size: int = 1000
    batch_timeout_seconds: float = 5.0
    channel_capacity: int | None = None
    cycle_log_interval_seconds: int = 30

    @property
    def effective_channel_capacity(self) -> int:
        return self.channel_capacity or self.batch_size


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"
    log_dir: str = "logs"
    log_to_stdout: bool = False


@dataclass
class HealthConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class MetricsConfig:
    enabled: bool = True
    port: int = 8000


SECTIONS: dict[str, type] = {
    "bus": BusConfig,
    "sink": SinkConfig,
    "batching": BatchingConfig,
    "logging": LoggingConfig,
    "health": HealthConfig,
    "metrics": MetricsConfig,
}


def _build_section(section_cls: type, data: dict[str, Any] | None, context: str) -> Any:
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{context}: section must be a mapping, got {type(data).__name__}")

    known = {f.name for f in fields(section_cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"{context}: unknown setting(s) {unknown}")
    return section_cls(**data)


@dataclass
class RelayConfig:
    """Relay pipeline configuration.

    Configuration structure:
        bus:       {...}   # Kafka connection, subscription, consumer group
        sink:      {...}   # Table URI, compression, routing key segment
        batching:  {...}   # batch_size, batch_timeout_seconds, channel_capacity
        logging:   {...}
        health:    {...}
        metrics:   {...}
    """

    bus: BusConfig = field(default_factory=BusConfig)
    sink: SinkConfig = field(default_factory=SinkConfig)
    batching: BatchingConfig = field(default_factory=BatchingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelayConfig":
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ConfigurationError(f"Unknown configuration section(s) {unknown}")

        return cls(
            **{
                name: _build_section(section_cls, data.get(name), name)
                for name, section_cls in SECTIONS.items()
            }
        )

    def to_dict(self, mask_secrets: bool = True) -> dict[str, Any]:
        data = asdict(self)
        return _mask_secrets(data) if mask_secrets else data

    def validate(self) -> None:
        """Validate required fields, enums and numeric ranges.

        Raises:
            ConfigurationError: on the first invalid setting
        """
        bus = asdict(self.bus)
        if not self.bus.bootstrap_servers:
            raise ConfigurationError("bus.bootstrap_servers is required")
        if not self.bus.topic_pattern and not self.bus.topics:
            raise ConfigurationError("bus: one of topic_pattern or topics is required")
        if self.bus.topic_pattern and self.bus.topics:
            raise ConfigurationError("bus: topic_pattern and topics are mutually exclusive")
        if self.bus.topic_pattern:
            try:
                re.compile(self.bus.topic_pattern)
            except re.error as e:
                raise ConfigurationError(
                    f"bus.topic_pattern is not a valid regex: {e}", cause=e
                ) from e
        if not self.bus.group_name:
            raise ConfigurationError("bus.group_name is required")
        if not self.bus.durable_name:
            raise ConfigurationError("bus.durable_name is required")
        self._validate_enum(bus, "auto_offset_reset", VALID_OFFSET_RESETS, "bus")
        self._validate_enum(bus, "security_protocol", VALID_SECURITY_PROTOCOLS, "bus")
        if self.bus.security_protocol.startswith("SASL"):
            self._validate_enum(bus, "sasl_mechanism", VALID_SASL_MECHANISMS, "bus")
            if not self.bus.sasl_username or not self.bus.sasl_password:
                raise ConfigurationError(
                    "bus: sasl_username and sasl_password are required for SASL"
                )
        self._validate_min(bus, "fetch_max_records", 1, True, "bus")
        self._validate_min(bus, "fetch_timeout_ms", 0, False, "bus")
        self._validate_min(bus, "error_backoff_seconds", 0, True, "bus")
        self._validate_min(bus, "max_redeliveries", 0, True, "bus")

        sink = asdict(self.sink)
        self._validate_enum(sink, "type", VALID_SINK_TYPES, "sink")
        self._validate_enum(sink, "compression", VALID_COMPRESSIONS, "sink")
        if self.sink.type == "delta" and not self.sink.table_uri:
            raise ConfigurationError("sink.table_uri is required for sink.type 'delta'")
        if not self.sink.table_name:
            raise ConfigurationError("sink.table_name is required")
        self._validate_min(sink, "max_execution_seconds", 0, False, "sink")
        self._validate_min(sink, "partition_key_segment", 0, True, "sink")
        if not self.sink.subject_delimiter:
            raise ConfigurationError("sink.subject_delimiter must not be empty")

        batching = asdict(self.batching)
        self._validate_min(batching, "batch_size", 1, True, "batching")
        self._validate_min(batching, "batch_timeout_seconds", 0, False, "batching")
        if self.batching.channel_capacity is not None:
            self._validate_min(batching, "channel_capacity", 1, True, "batching")
        self._validate_min(batching, "cycle_log_interval_seconds", 1, True, "batching")

        log = asdict(self.logging)
        log["level"] = str(log["level"]).upper()
        self._validate_enum(log, "level", VALID_LOG_LEVELS, "logging")
        self._validate_enum(log, "format", VALID_LOG_FORMATS, "logging")

        self._validate_range(asdict(self.health), "port", 0, 65535, "health")
        self._validate_range(asdict(self.metrics), "port", 0, 65535, "metrics")

    @staticmethod
    def _validate_enum(
        settings: dict[str, Any],
        key: str,
        valid_values: list[Any],
        context: str,
    ) -> None:
        """Validate that a setting's value is in a list of valid values."""
        if key in settings and settings[key] not in valid_values:
            raise ConfigurationError(
                f"{context}: {key} must be one of {valid_values}, got '{settings[key]}'"
            )

    @staticmethod
    def _validate_min(
        settings: dict[str, Any],
        key: str,
        min_value: float,
        inclusive: bool,
        context: str,
    ) -> None:
        """Validate that a setting's value meets a minimum threshold."""
        if key not in settings:
            return
        value = settings[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"{context}: {key} must be a number, got '{value}'")
        if inclusive and value < min_value:
            raise ConfigurationError(f"{context}: {key} must be >= {min_value}, got {value}")
        elif not inclusive and value <= min_value:
            raise ConfigurationError(f"{context}: {key} must be > {min_value}, got {value}")

    @staticmethod
    def _validate_range(
        settings: dict[str, Any],
        key: str,
        min_value: float,
        max_value: float,
        context: str,
    ) -> None:
        """Validate that a setting's value is within a range (inclusive)."""
        if key not in settings:
            return
        value = settings[key]
        if isinstance(value, bool) or not isinstance(value, int) or not (min_value <= value <= max_value):
            raise ConfigurationError(
                f"{context}: {key} must be between {min_value} and {max_value}, got {value}"
            )


def resolve_config_path(config_path: Path | None = None) -> Path:
    """Explicit path, then $RELAY_CONFIG, then the bundled default."""
    if config_path is not None:
        return Path(config_path)
    env_path = os.getenv(CONFIG_PATH_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(
    config_path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> RelayConfig:
    """Load and validate relay configuration from a YAML file.

    Environment variables ARE supported using ${VAR_NAME} syntax in YAML files.

    Raises:
        ConfigurationError: missing file, malformed YAML or invalid settings
    """
    config_path = resolve_config_path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from file: {config_path}")
    try:
        yaml_data = load_yaml(config_path)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}", cause=e) from e

    if not isinstance(yaml_data, dict):
        raise ConfigurationError(f"Invalid config file {config_path}: expected a mapping")

    yaml_data = _expand_env_vars(yaml_data)

    if overrides:
        logger.debug(f"Applying overrides: {list(overrides.keys())}")
        yaml_data = _deep_merge(yaml_data, overrides)

    try:
        config = RelayConfig.from_dict(yaml_data)
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration: {e}", cause=e) from e

    logger.debug("Validating configuration...")
    config.validate()
    logger.debug("Configuration validation passed")

    return config


_relay_config: RelayConfig | None = None


def get_config() -> RelayConfig:
    """Get or load the singleton config instance."""
    global _relay_config
    if _relay_config is None:
        _relay_config = load_config()
    return _relay_config


def set_config(config: RelayConfig) -> None:
    """Set the singleton config instance (useful for testing)."""
    global _relay_config
    _relay_config = config


def reset_config() -> None:
    """Reset the singleton config instance (forces reload on next get_config() call)."""
    global _relay_config
    _relay_config = None


def _cli_main(argv: list[str] | None = None) -> int:
    """CLI entry point for config validation and debugging."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Relay Pipeline Configuration Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Validate configuration
  python -m config.config --validate

  # Show resolved configuration (secrets masked)
  python -m config.config --show-merged

  # JSON output for automation
  python -m config.config --config /etc/relay/config.yaml --validate --json
        """,
    )

    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate configuration structure and values",
    )
    parser.add_argument(
        "--show-merged",
        action="store_true",
        help="Display resolved configuration as YAML (secrets masked)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config.yaml file (default: $RELAY_CONFIG or src/config/config.yaml)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format instead of human-readable",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )

    if not args.validate and not args.show_merged:
        parser.print_help()
        return 0

    try:
        config = load_config(config_path=args.config)
    except ConfigurationError as e:
        if args.json:
            print(json.dumps({"validation": {"passed": False, "errors": [str(e)]}}))
        else:
            print(f"✗ Validation error: {e}", file=sys.stderr)
        return 1

    output: dict[str, Any] = {}

    if args.validate:
        if args.json:
            output["validation"] = {"passed": True, "errors": []}
        else:
            print("✓ Configuration validation passed")
            print(f"  - Bus: {config.bus.bootstrap_servers}")
            print(f"  - Sink: {config.sink.type}")

    if args.show_merged:
        if args.json:
            output["merged_config"] = config.to_dict()
        else:
            print("\nConfiguration:")
            print("=" * 80)
            print(yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False))
            print("=" * 80)

    if args.json:
        print(json.dumps(output, indent=2))

    return 0


if __name__ == "__main__":
    sys.exit(_cli_main())
