"""
Entry point for the relay ingest worker.

Usage:
    # Run with the bundled config (src/config/config.yaml)
    python -m relay_pipeline

    # Explicit config file and stdout-only logging (containers)
    python -m relay_pipeline --config /etc/relay/config.yaml --log-to-stdout

    # Stop after 10 committed batches
    python -m relay_pipeline --max-batches 10

Exit status is 0 after a drained shutdown and 1 when configuration or a
connection fails at startup.
"""

import argparse
import asyncio
import errno
import logging
import socket
import sys
from pathlib import Path

from dotenv import load_dotenv
from prometheus_client import REGISTRY, start_http_server

from config.config import RelayConfig, SinkConfig, load_config
from core import __version__
from core.errors.exceptions import ConfigurationError, ConnectError
from core.logging.setup import DEFAULT_LOGGER_NAME, setup_logging
from core.logging.utilities import log_exception, log_startup_banner
from core.utils.worker_id import generate_worker_id
from relay_pipeline.common.consumer import KafkaSubscription
from relay_pipeline.common.health import HealthCheckServer
from relay_pipeline.common.lifecycle import LifecycleController
from relay_pipeline.storage.base import SinkConnection, TableDescriptor
from relay_pipeline.storage.delta import DeltaSinkConnection
from relay_pipeline.storage.inmemory import InMemorySinkConnection
from relay_pipeline.workers.batch_ingest_worker import BatchIngestWorker
from relay_pipeline.writers.sink_writer import SinkWriter

# __main__.py is at src/relay_pipeline/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(DEFAULT_LOGGER_NAME)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Relay bus records into an analytical table in batches",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with the default configuration
    python -m relay_pipeline

    # Debug logging to stdout, console format
    python -m relay_pipeline --log-level DEBUG --log-to-stdout --console-logs
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: $RELAY_CONFIG or src/config/config.yaml)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: logging.level from config)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: logging.log_dir from config)",
    )

    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        default=None,
        help="Send all log output to stdout only, skipping file handlers. "
        "Useful for containerized deployments where logs are captured from stdout.",
    )

    log_format = parser.add_mutually_exclusive_group()
    log_format.add_argument(
        "--json-logs",
        dest="log_format",
        action="store_const",
        const="json",
        help="JSON lines log output",
    )
    log_format.add_argument(
        "--console-logs",
        dest="log_format",
        action="store_const",
        const="console",
        help="Human-readable log output",
    )

    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Port for Prometheus metrics server (default: metrics.port from config)",
    )

    parser.add_argument(
        "--instance-id",
        type=str,
        default=None,
        help="Instance identifier appended to the client id (default: generated)",
    )

    parser.add_argument(
        "--max-batches",
        type=int,
        default=None,
        help="Stop after this many committed batches",
    )

    return parser.parse_args(argv)


def build_overrides(args: argparse.Namespace) -> dict:
    """Command line options as a config overlay."""
    logging_overrides = {}
    if args.log_level:
        logging_overrides["level"] = args.log_level
    if args.log_dir:
        logging_overrides["log_dir"] = args.log_dir
    if args.log_to_stdout:
        logging_overrides["log_to_stdout"] = True
    if args.log_format:
        logging_overrides["format"] = args.log_format

    overrides: dict = {}
    if logging_overrides:
        overrides["logging"] = logging_overrides
    if args.metrics_port is not None:
        overrides["metrics"] = {"port": args.metrics_port}
    if args.instance_id:
        overrides["bus"] = {"instance_id": args.instance_id}
    return overrides


def start_metrics_server(preferred_port: int) -> int:
    """Start Prometheus metrics server with automatic port fallback.
    Returns actual port number that the server is listening on."""
    try:
        start_http_server(preferred_port, registry=REGISTRY)
        return preferred_port
    except OSError as e:
        if e.errno != errno.EADDRINUSE:
            raise
        logger.info(
            "Port already in use, finding available port",
            extra={"preferred_port": preferred_port},
        )

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("", 0))
            s.listen(1)
            available_port = s.getsockname()[1]

        start_http_server(available_port, registry=REGISTRY)
        return available_port


def build_sink(config: SinkConfig, service_logger: logging.Logger) -> tuple[SinkConnection, TableDescriptor]:
    if config.type == "memory":
        connection = InMemorySinkConnection(logger=service_logger)
        return connection, connection.table_descriptor(config.table_name)
    connection = DeltaSinkConnection(config, logger=service_logger)
    return connection, connection.table_descriptor()


async def run_pipeline(
    config: RelayConfig,
    service_logger: logging.Logger,
    max_batches: int | None = None,
    subscription_factory=None,
) -> int:
    """Connect, run until drained and return the exit status."""
    subscription_factory = subscription_factory or KafkaSubscription
    sink, table = build_sink(config.sink, service_logger)
    try:
        await sink.connect()
    except (ConfigurationError, ConnectError) as e:
        log_exception(service_logger, e, "Failed to connect to sink", include_traceback=False)
        return 1

    subscription = subscription_factory(config.bus, logger=service_logger)
    try:
        await subscription.subscribe()
    except ConnectError as e:
        log_exception(service_logger, e, "Failed to subscribe to bus", include_traceback=False)
        await sink.close()
        return 1

    lifecycle = LifecycleController(logger=service_logger)
    health_server = HealthCheckServer(
        port=config.health.port,
        host=config.health.host,
        worker_name=BatchIngestWorker.WORKER_NAME,
        enabled=config.health.enabled,
        logger=service_logger,
    )
    sink_writer = SinkWriter(
        sink,
        table,
        consumer_group=config.bus.group_name,
        partition_key_segment=config.sink.partition_key_segment,
        subject_delimiter=config.sink.subject_delimiter,
        logger=service_logger,
    )
    worker = BatchIngestWorker(
        subscription,
        sink_writer,
        batch_size=config.batching.batch_size,
        batch_timeout_seconds=config.batching.batch_timeout_seconds,
        channel_capacity=config.batching.effective_channel_capacity,
        lifecycle=lifecycle,
        health_server=health_server,
        logger=service_logger,
        max_batches=max_batches,
        worker_id=config.bus.client_id,
        cycle_log_interval_seconds=config.batching.cycle_log_interval_seconds,
    )

    lifecycle.install_signal_handlers()
    try:
        await worker.start()
    finally:
        lifecycle.remove_signal_handlers()
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv(PROJECT_ROOT / ".env")

    global logger
    args = parse_args(argv)

    try:
        config = load_config(args.config, overrides=build_overrides(args))
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR, format="%(levelname)s: %(message)s")
        logger.error(f"Configuration error: {e}")
        return 1

    if not config.bus.instance_id:
        config.bus.instance_id = generate_worker_id()

    logger = setup_logging(
        name=DEFAULT_LOGGER_NAME,
        stage=BatchIngestWorker.WORKER_NAME,
        log_dir=Path(config.logging.log_dir),
        json_format=config.logging.format == "json",
        console_level=getattr(logging, config.logging.level.upper()),
        worker_id=config.bus.client_id,
        instance_id=config.bus.instance_id,
        log_to_stdout=config.logging.log_to_stdout,
    )

    masked = config.to_dict(mask_secrets=True)
    log_startup_banner(
        logger,
        worker_name="Relay Ingest Worker",
        version=__version__,
        instance_id=config.bus.instance_id,
        bootstrap_servers=masked["bus"]["bootstrap_servers"],
        subscription=config.bus.topic_pattern or ", ".join(config.bus.topics),
        consumer_group=config.bus.group_name,
        table_uri=masked["sink"]["table_uri"],
        batching=(
            f"{config.batching.batch_size} records / "
            f"{config.batching.batch_timeout_seconds}s"
        ),
        health_port=config.health.port if config.health.enabled else None,
        metrics_port=config.metrics.port if config.metrics.enabled else None,
        log_output_mode="stdout" if config.logging.log_to_stdout else "file + console",
    )

    if config.metrics.enabled:
        actual_port = start_metrics_server(config.metrics.port)
        if actual_port != config.metrics.port:
            logger.info(
                "Metrics server started on fallback port",
                extra={"actual_port": actual_port, "preferred_port": config.metrics.port},
            )
        else:
            logger.info("Metrics server started", extra={"port": actual_port})

    try:
        return asyncio.run(run_pipeline(config, logger, max_batches=args.max_batches))
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
        return 0
    except asyncio.CancelledError:
        logger.warning("Forced shutdown, unflushed records will be redelivered")
        return 0


if __name__ == "__main__":
    sys.exit(main())
