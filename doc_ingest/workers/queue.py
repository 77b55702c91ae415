# =============================================================================
# Upload Work Queue — Bounded FIFO Hand-Off to the Ingestion Worker
# =============================================================================
#
# Producers (the ingest endpoint) enqueue `UploadToProcess` messages; the
# single ingestion worker consumes them in order.
#
# BACKPRESSURE:
# The queue is bounded (capacity 100 by default). `enqueue()` waits while it
# is full instead of dropping or failing, so a slow ingestion path throttles
# producers and no accepted upload is lost.
#
# No priority and no de-duplication: an upload enqueued twice is processed
# twice. Messages live only in process memory; they are not persisted.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadToProcess:
    """Queue message: one upload waiting to be ingested."""

    upload_id: str


class UploadQueue:
    """asyncio-backed bounded queue of uploads awaiting ingestion."""

    def __init__(self, capacity: int = 100) -> None:
        if capacity <= 0:
            raise ValueError("Queue capacity must be positive")
        self.capacity = capacity
        self._queue: asyncio.Queue[UploadToProcess] = asyncio.Queue(maxsize=capacity)

    @property
    def pending(self) -> int:
        """Messages enqueued but not yet dequeued."""
        return self._queue.qsize()

    def full(self) -> bool:
        return self._queue.full()

    async def enqueue(self, message: UploadToProcess) -> None:
        """Add a message, waiting for free capacity if the queue is full."""
        if self._queue.full():
            logger.info(
                "Upload queue full (%d pending); waiting to enqueue upload %s",
                self.capacity, message.upload_id,
            )
        await self._queue.put(message)
        logger.debug("Enqueued upload %s (%d pending)", message.upload_id, self.pending)

    async def dequeue_all(self) -> AsyncIterator[UploadToProcess]:
        """
        Yield messages in FIFO order, forever.

        Waits while the queue is empty. Each message is marked done once the
        consumer asks for the next one (or stops iterating).
        """
        while True:
            message = await self._queue.get()
            try:
                yield message
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every enqueued message has been processed."""
        await self._queue.join()
