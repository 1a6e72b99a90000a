"""Context variables for structured logging."""

from contextvars import ContextVar

_cycle_id: ContextVar[str] = ContextVar("cycle_id", default="")
_stage_name: ContextVar[str] = ContextVar("stage_name", default="")
_worker_id: ContextVar[str] = ContextVar("worker_id", default="")
_batch_id: ContextVar[str] = ContextVar("batch_id", default="")


def set_log_context(
    cycle_id: str | None = None,
    stage: str | None = None,
    worker_id: str | None = None,
    batch_id: str | None = None,
) -> None:
    if cycle_id is not None:
        _cycle_id.set(cycle_id)
    if stage is not None:
        _stage_name.set(stage)
    if worker_id is not None:
        _worker_id.set(worker_id)
    if batch_id is not None:
        _batch_id.set(batch_id)


def get_log_context() -> dict[str, str]:
    return {
        "cycle_id": _cycle_id.get(),
        "stage": _stage_name.get(),
        "worker_id": _worker_id.get(),
        "batch_id": _batch_id.get(),
    }


def clear_log_context() -> None:
    _cycle_id.set("")
    _stage_name.set("")
    _worker_id.set("")
    _batch_id.set("")
