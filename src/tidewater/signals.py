# src/tidewater/signals.py
"""
OS signal handling for the long-running replication worker.

SIGINT and SIGTERM are delivered through the running event loop and turned
into an `asyncio.Event` the pipeline races against the worker. The first
signal starts a graceful stop in which every shard finishes its current batch
and checkpoints; a second one exits at once.
"""

import asyncio
import logging
import os
import signal
from typing import Any, Dict, Optional, Tuple

logger: logging.Logger = logging.getLogger(__name__)

HANDLED_SIGNALS: Tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


class GracefulShutdown:
    """
    An async context manager that maps POSIX signals onto a shutdown event.

    Handlers are registered on the running loop with `add_signal_handler`, so
    the event is set from loop context. Whatever handled the signals before
    is put back on exit.
    """

    def __init__(self, signals: Tuple[signal.Signals, ...] = HANDLED_SIGNALS) -> None:
        self._signals: Tuple[signal.Signals, ...] = signals
        self._event: asyncio.Event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._replaced: Dict[signal.Signals, Any] = {}

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._event.is_set():
            logger.critical(f"Received {sig.name} again. Exiting now.")
            # Skip cleanup: a shard may be blocked in a multi-hour copy
            os._exit(1)
        logger.warning(
            f"Received {signal.strsignal(sig)}. Letting every shard finish "
            "its current batch; send the signal again to exit immediately."
        )
        self._event.set()

    async def __aenter__(self) -> asyncio.Event:
        """
        Registers the handlers on the running loop.

        Returns:
            asyncio.Event: Set once a handled signal is received.
        """
        self._loop = asyncio.get_running_loop()
        for sig in self._signals:
            previous: Any = signal.getsignal(sig)
            try:
                self._loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                # Outside the main thread, or on a loop without signal support
                logger.warning(f"Could not set handler for {sig.name}: {e}")
                continue
            self._replaced[sig] = previous
        return self._event

    async def __aexit__(self, *args: Any) -> None:
        """Removes the loop handlers and reinstalls the previous ones."""
        assert self._loop is not None
        for sig, previous in self._replaced.items():
            self._loop.remove_signal_handler(sig)
            if previous is not None:
                signal.signal(sig, previous)
        self._replaced.clear()
