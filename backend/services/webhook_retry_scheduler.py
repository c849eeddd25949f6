"""Retry Scheduler - periodic sweep over non-terminal webhook events.

Picks up, oldest first:
- `error` events that are still retryable, under the attempt ceiling and due
  (next_attempt_at passed)
- `received` events older than the grace period (queue overflow, or a restart
  before a worker got to them)
- `processing` events whose worker died (processing_started_at stale)

Each event goes through the same pipeline as a fresh delivery, so mapping and
account state are re-resolved every time. Concurrency inside a sweep is
bounded by a semaphore; per-account serialization comes from the pipeline's
lock.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Optional, Dict, Any

from models import EventStatus
from services import webhook_settings
from services.reconciliation_pipeline import ReconciliationPipeline

logger = logging.getLogger(__name__)


async def run_retry_sweep(
    pipeline: ReconciliationPipeline,
    batch_size: Optional[int] = None,
    concurrency: Optional[int] = None,
    received_grace_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    batch_size = batch_size or webhook_settings.WEBHOOK_SWEEP_BATCH_SIZE
    concurrency = concurrency or webhook_settings.WEBHOOK_SWEEP_CONCURRENCY
    if received_grace_seconds is None:
        received_grace_seconds = webhook_settings.WEBHOOK_RECEIVED_GRACE_SECONDS

    now = pipeline.clock()
    due = await pipeline.store.find_due_events(
        now=now,
        max_attempts=pipeline.max_attempts,
        received_before=now - timedelta(seconds=received_grace_seconds),
        stale_before=now - timedelta(seconds=pipeline.stale_seconds),
        limit=batch_size,
    )

    summary = {"picked": len(due), "processed": 0, "failed": 0, "skipped": 0}
    if not due:
        return summary

    semaphore = asyncio.Semaphore(concurrency)

    async def _retry(event: Dict[str, Any]) -> None:
        async with semaphore:
            try:
                outcome = await pipeline.run(event["event_id"])
            except Exception as e:
                logger.error(f"Retry of event {event['event_id']} could not be recorded: {e}")
                summary["failed"] += 1
                return
            if outcome is None:
                summary["skipped"] += 1
            elif outcome["status"] == EventStatus.PROCESSED.value:
                summary["processed"] += 1
            else:
                summary["failed"] += 1

    await asyncio.gather(*(_retry(event) for event in due))
    logger.info(
        f"RETRY_SWEEP_DONE picked={summary['picked']} processed={summary['processed']} "
        f"failed={summary['failed']} skipped={summary['skipped']}"
    )
    return summary
