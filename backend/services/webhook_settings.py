"""Environment-driven settings for webhook ingestion and reconciliation."""
import os
import logging
from typing import List

logger = logging.getLogger(__name__)

HOTMART_HOTTOK = (os.getenv("HOTMART_HOTTOK") or "").strip()
DOPPUS_SECRET_KEY = (os.getenv("DOPPUS_SECRET_KEY") or "").strip()

WEBHOOK_MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "5"))
WEBHOOK_ATTEMPT_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_ATTEMPT_TIMEOUT_SECONDS", "30"))
WEBHOOK_PROCESSING_STALE_SECONDS = int(os.getenv("WEBHOOK_PROCESSING_STALE_SECONDS", "600"))
WEBHOOK_RECEIVED_GRACE_SECONDS = int(os.getenv("WEBHOOK_RECEIVED_GRACE_SECONDS", "30"))
WEBHOOK_RETRY_SWEEP_MINUTES = int(os.getenv("WEBHOOK_RETRY_SWEEP_MINUTES", "5"))
WEBHOOK_SWEEP_BATCH_SIZE = int(os.getenv("WEBHOOK_SWEEP_BATCH_SIZE", "50"))
WEBHOOK_SWEEP_CONCURRENCY = int(os.getenv("WEBHOOK_SWEEP_CONCURRENCY", "5"))

RECONCILE_WORKERS = int(os.getenv("RECONCILE_WORKERS", "4"))
RECONCILE_QUEUE_SIZE = int(os.getenv("RECONCILE_QUEUE_SIZE", "1000"))

DEFAULT_RETRY_BACKOFF_SECONDS = [60, 300, 900, 3600]


def parse_backoff(raw: str) -> List[int]:
    """Parse "60,300,900" into [60, 300, 900]; falls back to the default on bad input."""
    try:
        values = [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        logger.warning(f"Invalid WEBHOOK_RETRY_BACKOFF_SECONDS={raw!r}, using default")
        return list(DEFAULT_RETRY_BACKOFF_SECONDS)
    if not values or any(v < 0 for v in values):
        return list(DEFAULT_RETRY_BACKOFF_SECONDS)
    return values


WEBHOOK_RETRY_BACKOFF_SECONDS = parse_backoff(
    os.getenv("WEBHOOK_RETRY_BACKOFF_SECONDS", "60,300,900,3600")
)


def backoff_seconds(attempts: int, schedule: List[int] = None) -> int:
    """Delay after the n-th failed attempt (1-based); the last value repeats."""
    schedule = schedule or WEBHOOK_RETRY_BACKOFF_SECONDS
    index = max(attempts, 1) - 1
    return schedule[min(index, len(schedule) - 1)]
