"""Pipeline workers."""

from relay_pipeline.workers.batch_ingest_worker import BatchIngestWorker

__all__ = ["BatchIngestWorker"]
