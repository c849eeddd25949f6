"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and the CLI scripts.
Each run_* returns a dict with "message" (and optionally "count").
"""
import logging

logger = logging.getLogger(__name__)


async def run_webhook_retry_sweep(pipeline=None):
    """Re-drive due webhook events through the reconciliation pipeline."""
    try:
        from services.webhook_retry_scheduler import run_retry_sweep
        if pipeline is None:
            from database import database
            from services.reconciliation_pipeline import ReconciliationPipeline
            pipeline = ReconciliationPipeline(database.get_store())
        summary = await run_retry_sweep(pipeline)
        count = summary["processed"]
        return {
            "message": f"Webhook retry sweep: {summary['picked']} picked, {count} processed, {summary['failed']} failed",
            "count": count,
            **summary,
        }
    except Exception as e:
        logger.error(f"Webhook retry sweep failed: {e}")
        raise
