"""Shutdown signal and RUNNING -> DRAINING -> STOPPED state machine."""

import asyncio
import logging
import signal
from enum import StrEnum

from core.errors.exceptions import InvalidTransitionError
from core.logging.setup import DEFAULT_LOGGER_NAME
from relay_pipeline.common.signals import (
    remove_shutdown_signal_handlers,
    setup_shutdown_signal_handlers,
)


class LifecycleState(StrEnum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


_ALLOWED_TRANSITIONS = {
    LifecycleState.RUNNING: LifecycleState.DRAINING,
    LifecycleState.DRAINING: LifecycleState.STOPPED,
}


class LifecycleController:
    """
    Owns the shutdown event and the process lifecycle state.

    The first shutdown request (signal or programmatic) moves the pipeline
    to DRAINING; later requests are no-ops. With signal handlers
    installed, a second signal while draining cancels every task on the
    loop for a forced exit.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = (logger or logging.getLogger(DEFAULT_LOGGER_NAME)).getChild("lifecycle")
        self._state = LifecycleState.RUNNING
        self._shutdown_event = asyncio.Event()
        self._reason: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def is_running(self) -> bool:
        return self._state == LifecycleState.RUNNING

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    def _transition(self, target: LifecycleState) -> None:
        if _ALLOWED_TRANSITIONS.get(self._state) != target:
            raise InvalidTransitionError(self._state.value, target.value)
        previous, self._state = self._state, target
        self._logger.info(
            f"Lifecycle {previous.value} -> {target.value}",
            extra={"state": target.value, "reason": self._reason},
        )

    def request_shutdown(self, reason: str = "requested") -> bool:
        """Enter DRAINING. Returns False if shutdown was already requested."""
        if self._state != LifecycleState.RUNNING:
            return False
        self._reason = reason
        self._transition(LifecycleState.DRAINING)
        self._shutdown_event.set()
        return True

    def mark_stopped(self) -> None:
        self._transition(LifecycleState.STOPPED)

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        setup_shutdown_signal_handlers(self.handle_signal, self._loop)

    def remove_signal_handlers(self) -> None:
        if self._loop is not None:
            remove_shutdown_signal_handlers(self._loop)

    def handle_signal(self, sig: signal.Signals) -> None:
        """First signal drains; a second one cancels all tasks."""
        if self.request_shutdown(reason=f"signal {sig.name}"):
            self._logger.info(
                "Received signal, initiating graceful shutdown",
                extra={"signal": sig.name},
            )
            return

        self._logger.warning(
            "Received second signal, forcing immediate shutdown",
            extra={"signal": sig.name},
        )
        loop = self._loop or asyncio.get_running_loop()
        for task in asyncio.all_tasks(loop):
            task.cancel()
