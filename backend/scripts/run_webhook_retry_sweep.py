"""
Run one webhook retry sweep and exit.

The API process already runs the sweep on an interval; this is for cron-driven
deployments or draining a backlog by hand.

Usage (from backend/):
  python -m scripts.run_webhook_retry_sweep
  python -m scripts.run_webhook_retry_sweep --batch-size 200 --concurrency 10
"""
import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database


async def sweep_once(batch_size: int = None, concurrency: int = None) -> dict:
    from services.reconciliation_pipeline import ReconciliationPipeline
    from services.webhook_retry_scheduler import run_retry_sweep

    pipeline = ReconciliationPipeline(database.get_store())
    return await run_retry_sweep(pipeline, batch_size=batch_size, concurrency=concurrency)


def main():
    parser = argparse.ArgumentParser(description="Run one webhook retry sweep")
    parser.add_argument("--batch-size", type=int, default=None, help="Max events to pick (default WEBHOOK_SWEEP_BATCH_SIZE)")
    parser.add_argument("--concurrency", type=int, default=None, help="Concurrent reconciliations (default WEBHOOK_SWEEP_CONCURRENCY)")
    args = parser.parse_args()

    async def _():
        await database.connect()
        try:
            return await sweep_once(batch_size=args.batch_size, concurrency=args.concurrency)
        finally:
            await database.close()

    summary = asyncio.run(_())
    print(
        f"Picked {summary['picked']}: {summary['processed']} processed, "
        f"{summary['failed']} failed, {summary['skipped']} skipped"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
