"""Logging setup and configuration."""

import io
import logging
import secrets
import shutil
import sys
import threading
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

# Default settings
DEFAULT_LOGGER_NAME = "relay_pipeline"
DEFAULT_LOG_DIR = Path("logs")
DEFAULT_ROTATION_WHEN = "H"  # Hourly
DEFAULT_ROTATION_INTERVAL = 1
DEFAULT_BACKUP_COUNT = 24
DEFAULT_CONSOLE_LEVEL = logging.INFO
DEFAULT_FILE_LEVEL = logging.DEBUG

# Ordinal instance ids keep concurrent workers from sharing a log file
_instance_counter = 0
_instance_counter_lock = threading.Lock()


def _get_next_instance_id() -> str:
    """Get next instance ID as ordinal number (thread-safe)."""
    global _instance_counter
    with _instance_counter_lock:
        instance_id = str(_instance_counter)
        _instance_counter += 1
        return instance_id


# Library loggers quieted to WARNING
NOISY_LOGGERS = [
    "aiokafka",
    "aiohttp",
    "deltalake",
    "urllib3",
]


class ArchivingTimedRotatingFileHandler(TimedRotatingFileHandler):
    """
    TimedRotatingFileHandler that moves rotated files to an archive folder.

    Example:
        logs/2026-01-05/relay_ingest_0105_1430_0.log             (current)
        logs/archive/2026-01-05/relay_ingest_0105_1430_0.log.2026-01-05_14
    """

    def __init__(
        self,
        filename,
        when="midnight",
        interval=1,
        backupCount=0,
        encoding=None,
        delay=False,
        utc=False,
        archive_dir=None,
    ):
        super().__init__(filename, when, interval, backupCount, encoding, delay, utc)
        if archive_dir:
            self.archive_dir = Path(archive_dir)
        else:
            self.archive_dir = Path(self.baseFilename).parent / "archive"

        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def doRollover(self):
        super().doRollover()

        log_path = Path(self.baseFilename)
        for rotated_file in log_path.parent.glob(f"{log_path.name}.*"):
            if rotated_file == log_path:
                continue

            try:
                shutil.move(str(rotated_file), str(self.archive_dir / rotated_file.name))
            except OSError as e:
                # Not through logging: we are inside a handler
                print(f"Warning: Failed to archive {rotated_file}: {e}", file=sys.stderr)


def get_log_file_path(
    log_dir: Path,
    stage: str | None = None,
    instance_id: str | None = None,
) -> Path:
    """
    Build log file path with a date subfolder.

    Structure: {log_dir}/{YYYY-MM-DD}/relay_{stage}_{MMDD}_{HHMM}_{instance}.log
    """
    now = datetime.now()
    date_folder = now.strftime("%Y-%m-%d")
    stamp = now.strftime("%m%d_%H%M")

    base_name = f"relay_{stage}_{stamp}" if stage else f"relay_{stamp}"
    phrase = instance_id or _get_next_instance_id()

    return log_dir / date_folder / f"{base_name}_{phrase}.log"


def _build_console_handler() -> logging.StreamHandler:
    if sys.platform == "win32":
        safe_stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
        return logging.StreamHandler(safe_stdout)
    return logging.StreamHandler(sys.stdout)


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def setup_logging(
    name: str = DEFAULT_LOGGER_NAME,
    stage: str | None = None,
    log_dir: Path | None = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    rotation_when: str = DEFAULT_ROTATION_WHEN,
    rotation_interval: int = DEFAULT_ROTATION_INTERVAL,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    worker_id: str | None = None,
    instance_id: str | None = None,
    log_to_stdout: bool = False,
) -> logging.Logger:
    """
    Build the service logger with console and rotating file handlers.

    Handlers are attached to the named logger only and propagation is
    disabled, so the returned logger is self-contained: callers pass it
    to the components they construct instead of relying on the root
    logger. Calling this again replaces the previous handlers.

    Args:
        name: Logger name
        stage: Stage name used in the log file name and log context
        log_dir: Directory for log files (default: ./logs)
        json_format: JSON lines for the file handler (and for stdout in
            stdout-only mode); plain text otherwise
        console_level: Console handler level (default: INFO)
        file_level: File handler level (default: DEBUG)
        rotation_when: When to rotate logs ('H', 'midnight', 'M')
        rotation_interval: Interval for rotation
        backup_count: Number of rotated files to keep
        suppress_noisy: Quiet down Kafka/HTTP/Delta library loggers
        worker_id: Worker identifier for context
        instance_id: Suffix for the log file name (ordinal when omitted)
        log_to_stdout: Send all output to stdout only, no file handler.
            Useful for containers where stdout is collected.

    Returns:
        Configured logger instance
    """
    log_dir = log_dir or DEFAULT_LOG_DIR

    if worker_id:
        set_log_context(worker_id=worker_id)
    if stage:
        set_log_context(stage=stage)

    logger = logging.getLogger(name)
    _reset_handlers(logger)
    logger.setLevel(min(console_level, file_level))  # Handlers filter
    logger.propagate = False

    console_handler = _build_console_handler()
    log_file = None

    if log_to_stdout:
        console_handler.setLevel(file_level)
        console_handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())
        logger.addHandler(console_handler)
    else:
        console_handler.setLevel(console_level)
        console_handler.setFormatter(ConsoleFormatter())

        log_file = get_log_file_path(log_dir, stage=stage, instance_id=instance_id)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        if json_format:
            file_formatter = JSONFormatter()
        else:
            file_formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )

        # Structure: logs/archive/date
        try:
            archive_dir = log_dir / "archive" / log_file.relative_to(log_dir).parent
        except ValueError:
            archive_dir = log_file.parent / "archive"

        file_handler = ArchivingTimedRotatingFileHandler(
            log_file,
            when=rotation_when,
            interval=rotation_interval,
            backupCount=backup_count,
            encoding="utf-8",
            archive_dir=archive_dir,
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(file_formatter)

        logger.addHandler(file_handler)
        logger.addHandler(console_handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    if log_file is None:
        logger.debug("Logging initialized: stdout-only mode")
    else:
        logger.debug(f"Logging initialized: file={log_file}, json={json_format}")

    return logger


def generate_cycle_id() -> str:
    """
    Generate unique cycle identifier.

    Format: c-YYYYMMDD-HHMMSS-XXXX where XXXX is random hex.
    """
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    suffix = secrets.token_hex(2)
    return f"c-{ts}-{suffix}"
