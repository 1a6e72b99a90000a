"""Batch writers."""

from relay_pipeline.writers.sink_writer import SinkWriter, extract_partition_key

__all__ = ["SinkWriter", "extract_partition_key"]
