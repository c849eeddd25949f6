"""Event Store - durable record of every inbound provider notification.

InboundEvent rows are never deleted; the row (raw payload, status, error
detail, attempts) is the audit trail operators read from the diagnostics API.

Status lifecycle:
    received -> processing -> processed
                           -> error (retryable until attempts hit the ceiling)
Malformed payloads are stored directly as error with retryable=False.
"""
import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Tuple

from models import InboundEvent, EventStatus, utc_now
from services.errors import ReconciliationError
from services.payload_decoders import DecodedEvent
from services.subscription_store import SubscriptionStore
from services import webhook_settings

logger = logging.getLogger(__name__)


def _payload_fingerprint(payload: Any) -> str:
    serialized = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(serialized.encode()).hexdigest()[:32]


async def record_event(
    store: SubscriptionStore,
    decoded: DecodedEvent,
    raw_payload: Dict[str, Any],
    source_ip: Optional[str] = None,
) -> Tuple[bool, Dict[str, Any]]:
    """Idempotent insert keyed by provider/event type/transaction id.

    Returns (created, stored_row). A redelivery returns (False, existing_row)
    and changes nothing.
    """
    event = InboundEvent(
        provider=decoded.provider,
        idempotency_key=decoded.idempotency_key,
        transaction_id=decoded.transaction_id,
        event_type=decoded.event_type,
        kind=decoded.kind,
        email=decoded.email,
        raw_payload=raw_payload,
        source_ip=source_ip,
    )
    return await store.insert_event_if_absent(event.model_dump())


async def record_malformed_event(
    store: SubscriptionStore,
    provider: str,
    raw_payload: Any,
    error: ReconciliationError,
    source_ip: Optional[str] = None,
) -> Tuple[bool, Dict[str, Any]]:
    """Persist an undecodable payload as a permanent error for manual inspection.

    Keyed by a fingerprint of the payload so a provider redelivering the same
    broken body does not pile up rows.
    """
    now = utc_now()
    event = InboundEvent(
        provider=provider,
        idempotency_key=f"{provider}:malformed:{_payload_fingerprint(raw_payload)}",
        raw_payload=raw_payload if isinstance(raw_payload, dict) else {"_raw": raw_payload},
        status=EventStatus.ERROR,
        error=str(error),
        error_type=type(error).__name__,
        retryable=False,
        source_ip=source_ip,
        created_at=now,
        updated_at=now,
    )
    return await store.insert_event_if_absent(event.model_dump())


async def claim_event(
    store: SubscriptionStore,
    event_id: str,
    now: Optional[datetime] = None,
    stale_seconds: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """Move the event to processing (counting the attempt) unless someone else holds it."""
    now = now or utc_now()
    if stale_seconds is None:
        stale_seconds = webhook_settings.WEBHOOK_PROCESSING_STALE_SECONDS
    return await store.claim_event(event_id, now, now - timedelta(seconds=stale_seconds))


async def mark_processed(
    store: SubscriptionStore,
    event_id: str,
    result: Dict[str, Any],
    account_id: Optional[str] = None,
) -> None:
    now = utc_now()
    await store.update_event(event_id, {
        "status": EventStatus.PROCESSED.value,
        "processed_at": now,
        "updated_at": now,
        "result": result,
        "related_account_id": account_id,
        "error": None,
        "error_type": None,
        "next_attempt_at": None,
        "processing_started_at": None,
    })


async def mark_failed(
    store: SubscriptionStore,
    event_id: str,
    error: Exception,
    retryable: bool,
    next_attempt_at: Optional[datetime] = None,
    refund_attempt: bool = False,
    account_id: Optional[str] = None,
) -> None:
    """Record a failed attempt. `refund_attempt` gives back the attempt counted at claim time."""
    fields = {
        "status": EventStatus.ERROR.value,
        "error": str(error) or type(error).__name__,
        "error_type": type(error).__name__,
        "retryable": retryable,
        "next_attempt_at": next_attempt_at,
        "processing_started_at": None,
        "updated_at": utc_now(),
    }
    if account_id:
        fields["related_account_id"] = account_id
    inc = {"attempts": -1} if refund_attempt else None
    await store.update_event(event_id, fields, inc=inc)


async def reset_for_reprocess(store: SubscriptionStore, event: Dict[str, Any]) -> None:
    """Operator-triggered retry: fresh attempt budget, immediately due."""
    status = event.get("status")
    if status != EventStatus.RECEIVED.value:
        status = EventStatus.ERROR.value
    await store.update_event(event["event_id"], {
        "status": status,
        "attempts": 0,
        "retryable": True,
        "next_attempt_at": None,
        "processing_started_at": None,
        "updated_at": utc_now(),
    })
