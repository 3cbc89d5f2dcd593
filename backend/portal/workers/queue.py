"""
Work Queue
══════════

Bounded FIFO of deferred work items between the upload path (many
producers) and the ingestion worker (exactly one consumer).

  enqueue()             non-blocking attempt first; when full the producer
                        waits for space (backpressure, items are never
                        dropped)
  enqueue_threadsafe()  same, for producers running outside the event loop
  dequeue(stop_event)   waits for an item OR the stop signal; the signal
                        surfaces as WorkQueueCancelled
  close()               refuse further items and release producers waiting
                        for space (their enqueue returns False); already
                        queued items can still be drained

Work items carry identifiers (document id, stored file name), never open
resources. Whatever they need is acquired from the scope the worker hands
them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100

T = TypeVar("T")


class WorkQueueCancelled(Exception):
    """dequeue() was interrupted by the stop signal."""


class WorkQueue(Generic[T]):
    """
    asyncio.Queue with a fixed capacity and a closed state.

    Usage:
        queue = WorkQueue(capacity=100)
        await queue.enqueue(job)
        job = await queue.dequeue(stop_event)
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=capacity)
        self._closed = False
        self._closed_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, item: T) -> bool:
        """Add an item, waiting while the queue is full. False once closed."""
        if item is None:
            raise TypeError("work item must not be None")
        if self._closed:
            logger.warning("Queue closed, item refused | item=%s", describe_item(item))
            return False

        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.debug(
                "Queue full, producer waiting | capacity=%d item=%s",
                self._capacity, describe_item(item),
            )
            if not await self._put_unless_closed(item):
                logger.warning(
                    "Queue closed while producer waited, item refused | item=%s",
                    describe_item(item),
                )
                return False

        logger.debug("Enqueued | item=%s depth=%d", describe_item(item), self._queue.qsize())
        return True

    async def _put_unless_closed(self, item: T) -> bool:
        """Wait for space, giving up when close() is called first."""
        putter = asyncio.ensure_future(self._queue.put(item))
        closer = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({putter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not putter.done():
                putter.cancel()
        return putter.done() and not putter.cancelled()

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind the loop the consumer runs on (needed by enqueue_threadsafe)."""
        self._loop = loop

    def enqueue_threadsafe(self, item: T, timeout: float | None = None) -> bool:
        """Blocking enqueue for producers on other threads."""
        if self._loop is None:
            raise RuntimeError("WorkQueue is not attached to an event loop")
        future = asyncio.run_coroutine_threadsafe(self.enqueue(item), self._loop)
        return future.result(timeout)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def dequeue(self, stop_event: asyncio.Event) -> T:
        """Next item in FIFO order; raises WorkQueueCancelled on the stop signal."""
        if stop_event.is_set():
            raise WorkQueueCancelled()

        getter = asyncio.ensure_future(self._queue.get())
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not getter.done():
                getter.cancel()

        if getter.done() and not getter.cancelled():
            return getter.result()
        raise WorkQueueCancelled()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._closed_event.set()
            logger.info("Queue closed | pending=%d", self._queue.qsize())

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def capacity(self) -> int:
        return self._capacity

    def qsize(self) -> int:
        return self._queue.qsize()

    def __len__(self) -> int:
        return self._queue.qsize()


def describe_item(item: object) -> str:
    """Log label for a work item."""
    return getattr(item, "description", None) or type(item).__name__
