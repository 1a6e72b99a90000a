"""Sink connections for the relay pipeline."""

from relay_pipeline.storage.base import BatchHandle, SinkConnection, TableDescriptor
from relay_pipeline.storage.delta import DeltaSinkConnection
from relay_pipeline.storage.inmemory import InMemorySinkConnection

__all__ = [
    "BatchHandle",
    "SinkConnection",
    "TableDescriptor",
    "DeltaSinkConnection",
    "InMemorySinkConnection",
]
