"""
Structured logging module.

Provides JSON and console logging with context propagation.
"""

from core.logging.context import (
    clear_log_context,
    get_log_context,
    set_log_context,
)
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.setup import (
    DEFAULT_LOGGER_NAME,
    generate_cycle_id,
    get_log_file_path,
    setup_logging,
)
from core.logging.utilities import (
    format_cycle_output,
    log_exception,
    log_startup_banner,
    log_with_context,
)

__all__ = [
    # Setup
    "DEFAULT_LOGGER_NAME",
    "setup_logging",
    "generate_cycle_id",
    "get_log_file_path",
    # Formatters
    "JSONFormatter",
    "ConsoleFormatter",
    # Context
    "set_log_context",
    "get_log_context",
    "clear_log_context",
    # Utilities
    "log_with_context",
    "log_exception",
    "format_cycle_output",
    "log_startup_banner",
]
