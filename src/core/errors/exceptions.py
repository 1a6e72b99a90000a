"""
Unified exception hierarchy for the relay pipeline.

Every error carries an ErrorCategory so callers can decide between logging
and moving on, dropping a batch for redelivery, or failing startup.
"""

# Import ErrorCategory from canonical source to avoid duplicate enum issues
from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for handling decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.AUTH,
            ErrorCategory.UNKNOWN,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


class TransientError(PipelineError):
    """Base class for transient errors; redelivery may succeed."""

    category = ErrorCategory.TRANSIENT


class PermanentError(PipelineError):
    """Base class for permanent errors; redelivery will not help."""

    category = ErrorCategory.PERMANENT


class AuthError(PipelineError):
    """Credentials were rejected by the bus or the store."""

    category = ErrorCategory.AUTH


# =============================================================================
# Pipeline errors
# =============================================================================


class ConfigurationError(PermanentError):
    """Invalid or ambiguous configuration. Fatal at startup."""

    pass


class ConnectError(TransientError):
    """Could not reach or open the bus or the sink at startup."""

    pass


class RecordDecodeError(PermanentError):
    """A single record could not be mapped to a sink row."""

    def __init__(
        self,
        message: str,
        subject: str | None = None,
        sequence: int | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(
            message, cause, {"subject": subject, "sequence": sequence}
        )
        self.subject = subject
        self.sequence = sequence


class SinkWriteError(TransientError):
    """A batch failed to prepare, append or commit."""

    pass


class AckError(TransientError):
    """Acknowledging a record to the bus failed."""

    pass


class ChannelClosedError(PermanentError):
    """Put or get on an inbound channel that has been closed."""

    pass


class InvalidTransitionError(PermanentError):
    """Lifecycle state machine was driven out of order."""

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Invalid lifecycle transition {current} -> {target}",
            context={"current": current, "target": target},
        )
        self.current = current
        self.target = target


# =============================================================================
# Error Classification Utilities
# =============================================================================

# Markers for string-based detection (fallback for non-PipelineError exceptions)
AUTH_ERROR_MARKERS = frozenset(
    {
        "unauthorized",
        "authentication",
        "sasl",
        "access denied",
        "invalid credentials",
    }
)

TRANSIENT_ERROR_MARKERS = frozenset(
    {
        "timeout",
        "timed out",
        "connection",
        "temporarily unavailable",
        "service unavailable",
        "broker not available",
        "not leader",
    }
)

# delta-rs reports optimistic concurrency failures with these phrases
DELTA_CONFLICT_MARKERS = (
    "commitfailederror",
    "failed to commit transaction",
    "transaction conflict",
    "version conflict",
    "concurrent",
)


def classify_os_error(error: OSError) -> ErrorCategory:
    """
    Classify OSError by errno.

    Disk full, read-only filesystem and permission denied are permanent for
    a local table; everything else is assumed to be transient I/O.
    """
    import errno

    permanent_errnos = (errno.ENOSPC, errno.EROFS, errno.EACCES, errno.EPERM)
    return ErrorCategory.PERMANENT if error.errno in permanent_errnos else ErrorCategory.TRANSIENT


def classify_exception(exc: Exception) -> ErrorCategory:
    """Classify an exception into error category."""
    if isinstance(exc, PipelineError):
        return exc.category

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    if any(m in exc_type or m in exc_str for m in DELTA_CONFLICT_MARKERS):
        return ErrorCategory.TRANSIENT

    if isinstance(exc, OSError) and exc.errno is not None:
        return classify_os_error(exc)

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    if any(m in exc_str for m in AUTH_ERROR_MARKERS):
        return ErrorCategory.AUTH

    if any(m in exc_type or m in exc_str for m in TRANSIENT_ERROR_MARKERS):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def is_transient_error(exc: Exception) -> bool:
    return classify_exception(exc) == ErrorCategory.TRANSIENT


def wrap_exception(
    exc: Exception,
    default_class: type = PipelineError,
    context: dict | None = None,
) -> PipelineError:
    """
    Wrap a library exception in a PipelineError subclass.

    PipelineErrors pass through with their context extended. Anything else
    is wrapped in the class matching its classified category, falling back
    to ``default_class`` when the category is unknown.
    """
    if isinstance(exc, PipelineError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)
    context = dict(context or {})
    context["error_type"] = type(exc).__name__

    if category == ErrorCategory.AUTH:
        return AuthError(str(exc), cause=exc, context=context)
    if category == ErrorCategory.PERMANENT and default_class is PipelineError:
        return PermanentError(str(exc), cause=exc, context=context)
    if category == ErrorCategory.TRANSIENT and default_class is PipelineError:
        return TransientError(str(exc), cause=exc, context=context)
    return default_class(str(exc), cause=exc, context=context)
