# src/tidewater/lifecycle.py
"""
Coordinates the shutdown of the stream worker.

Shutdown is requested from inside a shard's processing task, which the
graceful shutdown itself waits for. The request therefore only schedules a
background task and returns immediately.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Optional, Set

if TYPE_CHECKING:
    from tidewater.stream import StreamWorker

logger: logging.Logger = logging.getLogger(__name__)


class LifecycleCoordinator:
    """
    Runs bounded graceful shutdowns of the whole worker.

    Every request gets its own background task and its own completion
    awaitable from the worker. A later request can never cancel or resolve
    the wait of an earlier one.
    """

    def __init__(self, shutdown_timeout_s: float) -> None:
        """
        Args:
            shutdown_timeout_s (float): How long a graceful shutdown may take
                before the worker is stopped forcefully.
        """
        self._timeout_s: float = shutdown_timeout_s
        self._worker: Optional["StreamWorker"] = None
        # References only, so pending tasks are not garbage collected
        self._tasks: Set["asyncio.Task[None]"] = set()

    def bind_worker(self, worker: "StreamWorker") -> None:
        self._worker = worker

    def request_shutdown(self) -> None:
        """Starts a graceful shutdown in the background and returns at once."""
        task: "asyncio.Task[None]" = asyncio.get_running_loop().create_task(
            self._shutdown_sequence()
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Waits for every shutdown sequence started so far."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _shutdown_sequence(self) -> None:
        if self._worker is None:
            logger.error("Shutdown requested before a worker was bound.")
            return

        worker: "StreamWorker" = self._worker
        logger.info("Start shutdown gracefully.")
        completion: "asyncio.Future[None]" = worker.start_graceful_shutdown()

        logger.info(f"Wait up to {self._timeout_s:.0f}s for shutdown to complete.")
        try:
            await asyncio.wait_for(asyncio.shield(completion), self._timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Unable to shutdown gracefully, thus shutdown directly.")
            worker.shutdown()
        except Exception:
            logger.exception("Graceful shutdown failed, thus shutdown directly.")
            worker.shutdown()

        logger.info("Worker shutdown.")
