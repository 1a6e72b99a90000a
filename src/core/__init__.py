"""
Core library: infrastructure-agnostic building blocks for the relay pipeline.

Modules:
    errors   - Error classification and exception hierarchy
    logging  - Structured JSON/console logging with context propagation
    utils    - JSON serialization and worker id helpers

Nothing in here knows about Kafka consumers or Delta tables; transport
specific code lives in relay_pipeline.
"""

from .types import ErrorCategory, ErrorClassifier

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
    "ErrorClassifier",
]
