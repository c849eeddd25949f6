"""Reconciliation dispatcher - bounded in-process worker pool.

The webhook endpoint submits event ids here after the raw event is stored and
returns immediately. Workers drain the queue and run the pipeline; a full
queue only means the event waits for the retry sweep, which picks up
`received` rows older than the grace period.
"""
import asyncio
import logging
from typing import List, Optional

from services import webhook_settings
from services.reconciliation_pipeline import ReconciliationPipeline

logger = logging.getLogger(__name__)


class ReconciliationDispatcher:
    def __init__(
        self,
        pipeline: ReconciliationPipeline,
        workers: Optional[int] = None,
        queue_size: Optional[int] = None,
    ):
        self.pipeline = pipeline
        self.worker_count = workers or webhook_settings.RECONCILE_WORKERS
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size or webhook_settings.RECONCILE_QUEUE_SIZE)
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        for i in range(self.worker_count):
            self._tasks.append(asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}"))
        logger.info(f"Reconciliation dispatcher started with {self.worker_count} workers")

    async def stop(self) -> None:
        """Cancel workers. Queued ids are dropped; their events stay `received` for the sweep."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Reconciliation dispatcher stopped")

    def submit(self, event_id: str) -> bool:
        """Queue an event without blocking. Returns False when the queue is full."""
        try:
            self.queue.put_nowait(event_id)
            return True
        except asyncio.QueueFull:
            logger.warning(f"RECONCILE_QUEUE_FULL event_id={event_id} - deferring to retry sweep")
            return False

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self.queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            event_id = await self.queue.get()
            try:
                await self.pipeline.run(event_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Outcome could not be recorded; the event is re-driven once stale
                logger.error(f"Worker {index} failed on event {event_id}: {e}")
            finally:
                self.queue.task_done()
