"""
Background task handles.

A worker is a coroutine function that receives a stop event and returns once
the event is set. ``BackgroundTask.stop`` sets the event and waits for the
worker to return, so nothing keeps writing after shutdown.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

Worker = Callable[[asyncio.Event], Awaitable[None]]


def periodic(interval: float, cycle: Callable[[], Awaitable[None]], name: str = "periodic") -> Worker:
    """Build a worker that runs ``cycle`` every ``interval`` seconds until stopped.

    A failing cycle is logged and the loop carries on with the next one.
    """

    async def worker(stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await cycle()
            except Exception as e:
                logger.error("Background cycle failed", task=name, error=str(e))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    return worker


class BackgroundTask:
    """Handle for one long-running worker"""

    def __init__(self, name: str, worker: Worker):
        self.name = name
        self._worker = worker
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.exception: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "BackgroundTask":
        """Schedule the worker on the running loop; no-op if already started"""

        if self._task is not None:
            return self

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._worker(self._stop_event), name=self.name)
        logger.info("Background task started", task=self.name)
        return self

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the worker and wait until it has returned.

        With a timeout the worker is cancelled once the grace period expires,
        and the wait continues until the cancellation has completed.
        """

        if self._task is None:
            return

        self._stop_event.set()
        try:
            if timeout is None:
                await asyncio.shield(self._task)
            else:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Background task did not drain in time, cancelling", task=self.name)
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        except asyncio.CancelledError:
            if not self._task.done():
                raise
        except Exception as e:
            self.exception = e
            logger.error("Background task failed", task=self.name, error=str(e))

        self._task = None
        self._stop_event = None
        logger.info("Background task stopped", task=self.name)
