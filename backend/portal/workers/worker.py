"""
Ingestion Worker
════════════════

The single consumer of the WorkQueue. One asyncio task, started at
application startup and stopped at shutdown:

    loop:
        item  = await queue.dequeue(stop_event)      # or WorkQueueCancelled
        async with scope_factory() as scope:         # fresh session per item
            await item(scope, stop_event)

  - at most one item executes at any time
  - an exception from an item is logged with its traceback and counted;
    the loop moves on to the next item
  - the stop signal interrupts the dequeue wait; an in-flight item gets
    `shutdown_timeout` seconds to finish before the task is cancelled
  - items still queued at shutdown are abandoned (their metadata rows stay
    `pending`)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import AsyncContextManager, Callable

from portal.workers.jobs import ServiceScope, WorkItem
from portal.workers.queue import WorkQueue, WorkQueueCancelled, describe_item

logger = logging.getLogger(__name__)

ScopeFactory = Callable[[], AsyncContextManager[ServiceScope]]


class IngestionWorker:
    def __init__(
        self,
        queue:            WorkQueue[WorkItem],
        scope_factory:    ScopeFactory,
        shutdown_timeout: float = 30.0,
        name:             str = "ingestion-worker",
    ) -> None:
        self._queue = queue
        self._scope_factory = scope_factory
        self._shutdown_timeout = shutdown_timeout
        self._name = name
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

        self.processed = 0
        self.failed = 0
        self.current: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        if self._task is not None:
            raise RuntimeError(f"{self._name} already started")
        self._task = asyncio.create_task(self.run(), name=self._name)
        logger.info("Worker started | name=%s", self._name)
        return self._task

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is None:
            return

        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Worker did not finish in %.1fs, cancelling | item=%s",
                self._shutdown_timeout, self.current,
            )
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        logger.info(
            "Worker stopped | name=%s processed=%d failed=%d abandoned=%d",
            self._name, self.processed, self.failed, self._queue.qsize(),
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                item = await self._queue.dequeue(self._stop_event)
            except WorkQueueCancelled:
                logger.debug("Dequeue interrupted by stop signal | name=%s", self._name)
                break

            await self._execute(item)

    async def _execute(self, item: WorkItem) -> None:
        self.current = describe_item(item)
        t0 = time.monotonic()
        try:
            async with self._scope_factory() as scope:
                await item(scope, self._stop_event)
        except asyncio.CancelledError:
            logger.warning("Work item cancelled | item=%s", self.current)
            raise
        except Exception:
            self.failed += 1
            logger.exception("Work item failed | item=%s", self.current)
        else:
            self.processed += 1
            logger.debug(
                "Work item done | item=%s elapsed_ms=%.0f",
                self.current, (time.monotonic() - t0) * 1000,
            )
        finally:
            self.current = None

    def stats(self) -> dict:
        return {
            "running":     self.running,
            "processed":   self.processed,
            "failed":      self.failed,
            "queue_depth": self._queue.qsize(),
        }
