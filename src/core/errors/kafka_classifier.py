"""
Kafka error classification for the bus subscription.

Maps aiokafka exceptions onto the PipelineError hierarchy so the fetch
loop can decide whether to pause and retry or to log loudly.
"""

from core.errors.exceptions import (
    AuthError,
    PermanentError,
    PipelineError,
    TransientError,
    classify_exception,
)
from core.types import ErrorCategory

# Kafka error classifications based on aiokafka exception type names
KAFKA_ERROR_MAPPINGS = {
    ErrorCategory.TRANSIENT: [
        "BrokerNotAvailableError",
        "KafkaConnectionError",
        "NodeNotReadyError",
        "LeaderNotAvailableError",
        "NotLeaderForPartitionError",
        "RequestTimedOutError",
        "KafkaTimeoutError",
        "NotCoordinatorForGroupError",
        "CoordinatorNotAvailableError",
        "RebalanceInProgressError",
        "CommitFailedError",
        "IllegalGenerationError",
        "UnknownMemberIdError",
    ],
    ErrorCategory.AUTH: [
        "TopicAuthorizationFailedError",
        "GroupAuthorizationFailedError",
        "ClusterAuthorizationFailedError",
        "SaslAuthenticationError",
    ],
    ErrorCategory.PERMANENT: [
        "UnknownTopicOrPartitionError",
        "InvalidTopicError",
        "UnsupportedVersionError",
        "IllegalStateError",
        "OffsetOutOfRangeError",
    ],
}


def classify_kafka_error_type(error_type_name: str) -> ErrorCategory | None:
    """Classify a Kafka error by exception class name, or None if unmapped."""
    for category, error_types in KAFKA_ERROR_MAPPINGS.items():
        if error_type_name in error_types:
            return category
    return None


class KafkaErrorClassifier:
    """Error classifier for aiokafka consumer operations."""

    def classify_error(self, error: Exception) -> ErrorCategory:
        category = classify_kafka_error_type(type(error).__name__)
        if category is not None:
            return category
        return classify_exception(error)

    def is_transient(self, error: Exception) -> bool:
        return self.classify_error(error) in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.UNKNOWN,
        )

    def classify_consumer_error(
        self, error: Exception, context: dict | None = None
    ) -> PipelineError:
        """
        Wrap an aiokafka consumer error in the matching PipelineError.

        Args:
            error: Original exception from the consumer
            context: Additional context (merged with {"service": "kafka_consumer"})
        """
        if isinstance(error, PipelineError):
            return error

        ctx = {"service": "kafka_consumer", "error_type": type(error).__name__}
        if context:
            ctx.update(context)

        category = self.classify_error(error)
        if category == ErrorCategory.AUTH:
            return AuthError(
                f"Kafka consumer authentication failed: {error}",
                cause=error,
                context=ctx,
            )
        if category == ErrorCategory.PERMANENT:
            return PermanentError(
                f"Kafka consumer permanent error: {error}",
                cause=error,
                context=ctx,
            )
        return TransientError(
            f"Kafka consumer error: {error}",
            cause=error,
            context=ctx,
        )
