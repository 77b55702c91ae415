# =============================================================================
# Ingestion Worker — Background Loop Draining the Upload Queue
# =============================================================================
#
# STATE MACHINE:
#   IDLE ──(message dequeued)──▶ DRAINING ──(ingest done/failed)──▶ IDLE
#   any ──(stop())──▶ STOPPED
#
# LOOP:
#   1. Dequeue one upload (waits while the queue is empty)
#   2. Mark it PROCESSING (attempts + 1) and run IngestionService.ingest()
#   3. TransientIntegrationError → back off exponentially and retry, up to
#      ingestion_max_attempts tries in total (tenacity)
#   4. Success → COMPLETED; any other failure → FAILED with the error text
#   5. Log the failure with the upload id and continue with the next message
#
# Processing is strictly sequential: one ingestion in flight at a time, so
# two ingestions of the same upload never overlap.
#
# SHUTDOWN:
# stop() stops pulling new messages. An in-flight ingestion gets
# worker_shutdown_timeout seconds to finish; after that it is cancelled,
# which rolls back its chunk-store transaction, and the upload is marked
# FAILED so it can be re-enqueued.
# =============================================================================

from __future__ import annotations

import asyncio
import enum
import logging
from contextlib import aclosing

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from doc_ingest.db.models import IngestionStatus
from doc_ingest.errors import IngestionError, TransientIntegrationError
from doc_ingest.services.ingestion import IngestionService
from doc_ingest.services.uploads import UploadRepository
from doc_ingest.workers.queue import UploadQueue, UploadToProcess

logger = logging.getLogger(__name__)


class WorkerState(str, enum.Enum):
    IDLE = "idle"
    DRAINING = "draining"
    STOPPED = "stopped"


class IngestionWorker:
    """Single consumer of the UploadQueue."""

    def __init__(
        self,
        queue: UploadQueue,
        service: IngestionService,
        uploads: UploadRepository,
        max_attempts: int = 3,
        retry_base_delay: float = 2.0,
        retry_max_delay: float = 30.0,
        shutdown_timeout: float = 30.0,
    ) -> None:
        self._queue = queue
        self._service = service
        self._uploads = uploads
        self._max_attempts = max(max_attempts, 1)
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._shutdown_timeout = shutdown_timeout

        self._task: asyncio.Task | None = None
        self._stopping = False
        self.state = WorkerState.STOPPED
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the loop as a background task on the running event loop."""
        if self.running:
            return
        self._stopping = False
        self.state = WorkerState.IDLE
        self._task = asyncio.create_task(self._run(), name="ingestion-worker")
        logger.info("Ingestion worker started (max_attempts=%d)", self._max_attempts)

    async def stop(self) -> None:
        """Stop pulling messages and let the in-flight upload finish or abort."""
        if self._task is None:
            return
        self._stopping = True
        task, self._task = self._task, None

        if self.state is WorkerState.IDLE:
            # Waiting on an empty queue: nothing in flight to protect.
            task.cancel()
        else:
            try:
                await asyncio.wait_for(asyncio.shield(task), self._shutdown_timeout)
            except TimeoutError:
                logger.warning(
                    "In-flight ingestion did not finish within %.1fs; cancelling",
                    self._shutdown_timeout,
                )
                task.cancel()

        try:
            await task
        except asyncio.CancelledError:
            pass
        self.state = WorkerState.STOPPED
        logger.info(
            "Ingestion worker stopped (%d processed, %d failed)",
            self.processed, self.failed,
        )

    async def _run(self) -> None:
        async with aclosing(self._queue.dequeue_all()) as messages:
            async for message in messages:
                self.state = WorkerState.DRAINING
                try:
                    await self.process(message)
                except Exception:
                    self.failed += 1
                    logger.exception(
                        "Worker error on upload %s; continuing with the next message",
                        message.upload_id,
                    )
                self.state = WorkerState.IDLE
                if self._stopping:
                    break

    # -------------------------------------------------------------------------
    # One message
    # -------------------------------------------------------------------------

    async def process(self, message: UploadToProcess) -> bool:
        """
        Ingest one upload with retries and record the outcome.

        Never raises for an ingestion failure; returns False instead.
        """
        upload_id = message.upload_id
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(
                multiplier=self._retry_base_delay, max=self._retry_max_delay,
            ),
            retry=retry_if_exception_type(TransientIntegrationError),
            before_sleep=_log_retry(upload_id),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    await self._record(upload_id, IngestionStatus.PROCESSING)
                    written = await self._service.ingest(upload_id)
        except asyncio.CancelledError:
            self.failed += 1
            await self._record(
                upload_id, IngestionStatus.FAILED, "Ingestion interrupted by shutdown",
            )
            raise
        except Exception as exc:
            self.failed += 1
            cause = exc.message if isinstance(exc, IngestionError) else str(exc)
            logger.error(
                "Ingestion failed for upload %s: %s: %s",
                upload_id, type(exc).__name__, cause,
                exc_info=not isinstance(exc, IngestionError),
            )
            await self._record(upload_id, IngestionStatus.FAILED, f"{type(exc).__name__}: {cause}")
            return False

        self.processed += 1
        await self._record(upload_id, IngestionStatus.COMPLETED)
        logger.info("Upload %s ingested (%d chunks)", upload_id, written)
        return True

    async def _record(
        self,
        upload_id: str,
        status: IngestionStatus,
        error: str | None = None,
    ) -> None:
        """Write the ingestion status; a failure here is logged, not fatal."""
        try:
            await self._uploads.set_ingestion_status(upload_id, status, error)
        except Exception as exc:
            logger.warning(
                "Could not record status %s for upload %s: %s",
                status.value, upload_id, exc,
            )


def _log_retry(upload_id: str):
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Transient failure ingesting upload %s (attempt %d): %s; retrying in %.1fs",
            upload_id,
            retry_state.attempt_number,
            exc,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    return before_sleep
