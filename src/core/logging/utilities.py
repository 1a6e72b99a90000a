"""Logging utility functions."""

import logging
from typing import Any

# Reserved LogRecord attribute names that cannot be used in extra dict
_RESERVED_LOG_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "asctime",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)

MAX_ERROR_MESSAGE_LENGTH = 500


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (batch_id, duration_ms, etc.)
                  exc_info=True is passed through to the logger.

    Example:
        log_with_context(
            logger, logging.INFO, "Batch committed",
            batch_id=batch.batch_id,
            records_written=len(result.written),
        )
    """
    exc_info = kwargs.pop("exc_info", None)
    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}
    logger.log(level, msg, exc_info=exc_info, extra=extra)


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Extracts error_category from PipelineError subclasses and truncates
    the error message.

    Example:
        try:
            await sink.send()
        except Exception as e:
            log_exception(logger, e, "Batch write failed", batch_id=batch.batch_id)
    """
    if kwargs.get("error_category") is None and hasattr(exc, "category"):
        cat = exc.category
        kwargs["error_category"] = cat.value if hasattr(cat, "value") else str(cat)

    error_msg = str(exc)
    if len(error_msg) > MAX_ERROR_MESSAGE_LENGTH:
        error_msg = error_msg[:MAX_ERROR_MESSAGE_LENGTH] + "..."
    kwargs["error_message"] = error_msg
    kwargs.setdefault("error_type", type(exc).__name__)

    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}
    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=extra)
    else:
        logger.log(level, msg, extra=extra)


def format_cycle_output(
    cycle_count: int,
    succeeded: int,
    failed: int,
    skipped: int = 0,
    since_last: dict[str, int] | None = None,
    interval_seconds: int = 30,
    pending: int | None = None,
) -> str:
    """
    Format standardized cycle output with delta tracking.

    Example:
        >>> format_cycle_output(1, 1200, 34, 50)
        'Cycle 1: processed=1284, succeeded=1200, failed=34, skipped=50'
        >>> format_cycle_output(5, 1200, 0, 0, {"succeeded": 240}, 30)
        'Cycle 5: +240 this cycle | total: 1200 succeeded | 8.0 msg/s'
    """
    pending_suffix = f" | pending={pending}" if pending is not None else ""

    if since_last is not None:
        delta_total = (
            since_last.get("succeeded", 0)
            + since_last.get("failed", 0)
            + since_last.get("skipped", 0)
        )
        rate = delta_total / interval_seconds if interval_seconds > 0 else 0

        total_parts = [f"{succeeded} succeeded"]
        if failed > 0:
            total_parts.append(f"{failed} failed")
        if skipped > 0:
            total_parts.append(f"{skipped} skipped")

        parts = [
            f"+{delta_total} this cycle",
            f"total: {', '.join(total_parts)}",
            f"{rate:.1f} msg/s",
        ]
        return f"Cycle {cycle_count}: {' | '.join(parts)}{pending_suffix}"

    parts = [
        f"processed={succeeded + failed + skipped}",
        f"succeeded={succeeded}",
        f"failed={failed}",
    ]
    if skipped > 0:
        parts.append(f"skipped={skipped}")

    return f"Cycle {cycle_count}: {', '.join(parts)}{pending_suffix}"


_BANNER_FIELDS: list[tuple[str, str]] = [
    ("instance_id", "Instance:     {}"),
    ("bootstrap_servers", "Bus:          {}"),
    ("subscription", "Subscription: {}"),
    ("consumer_group", "Group:        {}"),
    ("table_uri", "Sink:         {}"),
    ("batching", "Batching:     {}"),
    ("health_port", "Health:       http://localhost:{}"),
    ("metrics_port", "Metrics:      http://localhost:{}/metrics"),
    ("log_output_mode", "Log Output:   {}"),
]


def log_startup_banner(
    logger: logging.Logger,
    worker_name: str,
    **kwargs: Any,
) -> None:
    """
    Log startup banner with worker configuration.

    Values are printed as given; mask secrets before calling.
    """
    separator = "=" * 50

    lines = ["", separator, worker_name]

    version = kwargs.get("version")
    if version:
        lines.append(f"Version: {version}")

    lines.append(separator)

    for field_name, fmt in _BANNER_FIELDS:
        value = kwargs.get(field_name)
        if value:
            lines.append(fmt.format(value))

    lines.append(separator)
    lines.append("")

    logger.info("\n".join(lines))
