"""
Core types shared across modules.

Kept dependency-free so that error, logging and pipeline modules can all
import from here without cycles.
"""

from enum import Enum
from typing import Protocol


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures; the work may succeed when the bus
                   redelivers it (network timeouts, broker unavailable,
                   table commit conflicts)
        AUTH: Credential failures (SASL rejected, storage access denied)
        PERMANENT: Failures that will not succeed on redelivery
                   (configuration issues, undecodable records)
        UNKNOWN: Unclassified errors
    """

    TRANSIENT = "transient"
    AUTH = "auth"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class ErrorClassifier(Protocol):
    """
    Protocol for error classification implementations.

    Transport-specific modules implement this to map library exceptions
    into the standard categories.
    """

    def classify_error(self, error: Exception) -> ErrorCategory:
        ...

    def is_transient(self, error: Exception) -> bool:
        ...


__all__ = [
    "ErrorCategory",
    "ErrorClassifier",
]
