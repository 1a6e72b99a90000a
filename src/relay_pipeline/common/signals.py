"""Cross-platform signal handler setup for graceful shutdown."""

import asyncio
import logging
import signal
from collections.abc import Callable

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def setup_shutdown_signal_handlers(
    callback: Callable[[signal.Signals], None],
    loop: asyncio.AbstractEventLoop | None = None,
) -> None:
    """Register SIGTERM/SIGINT handlers that invoke callback with the signal.

    On Unix, uses the event loop's add_signal_handler(). On Windows,
    falls back to signal.signal() since add_signal_handler() is not supported.
    """
    loop = loop or asyncio.get_running_loop()
    try:
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, callback, sig)
    except NotImplementedError:
        def _handler(signum, frame):
            sig = signal.Signals(signum)
            logger.info("Received signal %s, initiating shutdown", sig.name)
            loop.call_soon_threadsafe(callback, sig)

        for sig in SHUTDOWN_SIGNALS:
            signal.signal(sig, _handler)


def remove_shutdown_signal_handlers(loop: asyncio.AbstractEventLoop | None = None) -> None:
    loop = loop or asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.remove_signal_handler(sig)
        except NotImplementedError:
            signal.signal(sig, signal.SIG_DFL)
