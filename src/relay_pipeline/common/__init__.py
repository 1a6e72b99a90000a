"""Building blocks shared by the relay workers."""

from relay_pipeline.common.accumulator import BatchAccumulator
from relay_pipeline.common.acknowledger import Acknowledger
from relay_pipeline.common.channel import InboundChannel
from relay_pipeline.common.lifecycle import LifecycleController, LifecycleState
from relay_pipeline.common.types import (
    Batch,
    FlushTrigger,
    InboundRecord,
    SinkRow,
    WriteResult,
)

__all__ = [
    "Acknowledger",
    "Batch",
    "BatchAccumulator",
    "FlushTrigger",
    "InboundChannel",
    "InboundRecord",
    "LifecycleController",
    "LifecycleState",
    "SinkRow",
    "WriteResult",
]
