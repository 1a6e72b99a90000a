"""
Relay pipeline: bus subscription -> batches -> analytical table.

Records arrive from a Kafka consumer group, are grouped into batches by
size or age, committed to a Delta table in one write per batch, and only
then acknowledged back to the bus (at-least-once).

Run with ``python -m relay_pipeline``.
"""

from core import __version__

__all__ = ["__version__"]
