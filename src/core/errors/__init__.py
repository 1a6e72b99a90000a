"""
Error classification and exception hierarchy.

Provides:
- PipelineError hierarchy for typed exceptions
- Classification utilities for error handling
- Kafka error classifier for the bus subscription
"""

from core.errors.exceptions import (
    AckError,
    AuthError,
    ChannelClosedError,
    ConfigurationError,
    ConnectError,
    InvalidTransitionError,
    PermanentError,
    PipelineError,
    RecordDecodeError,
    SinkWriteError,
    TransientError,
    classify_exception,
    is_transient_error,
    wrap_exception,
)
from core.errors.kafka_classifier import KafkaErrorClassifier
from core.types import ErrorCategory

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "TransientError",
    "PermanentError",
    "AuthError",
    # Pipeline errors
    "ConfigurationError",
    "ConnectError",
    "RecordDecodeError",
    "SinkWriteError",
    "AckError",
    "ChannelClosedError",
    "InvalidTransitionError",
    # Classification utilities
    "classify_exception",
    "is_transient_error",
    "wrap_exception",
    "KafkaErrorClassifier",
]
