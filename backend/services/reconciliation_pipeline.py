"""Reconciliation pipeline - one unit of work per InboundEvent.

    claim (received/error -> processing, attempts += 1)
      -> decode raw payload
      -> [per-email lock] resolve account -> resolve plan -> reconcile (transaction)
      -> processed | error (+ next_attempt_at backoff, or permanent)

Every attempt starts from the stored raw payload and re-resolves account and
mapping, so a mapping added after a failure is picked up by the next attempt.
All business errors end up on the event row; nothing propagates to callers
except storage failures while recording the outcome.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable, List

from models import AuditAction, EventKind, EventStatus, UserRole, utc_now
from services import event_store, webhook_settings
from services.account_resolver import resolve_account, find_account
from services.errors import ReconciliationError, EventNotReprocessableError
from services.payload_decoders import get_decoder
from services.plan_mapper import resolve_plan
from services.subscription_reconciler import reconcile_event
from services.subscription_store import SubscriptionStore
from utils.audit import create_audit_log
from utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)


class AttemptTimeoutError(ReconciliationError):
    """A reconciliation attempt exceeded its execution budget."""


class ReconciliationPipeline:
    def __init__(
        self,
        store: SubscriptionStore,
        account_locks: Optional[KeyedLock] = None,
        max_attempts: Optional[int] = None,
        attempt_timeout: Optional[float] = None,
        stale_seconds: Optional[int] = None,
        backoff: Optional[List[int]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.account_locks = account_locks or KeyedLock()
        self.max_attempts = max_attempts or webhook_settings.WEBHOOK_MAX_ATTEMPTS
        self.attempt_timeout = attempt_timeout or webhook_settings.WEBHOOK_ATTEMPT_TIMEOUT_SECONDS
        self.stale_seconds = (
            webhook_settings.WEBHOOK_PROCESSING_STALE_SECONDS if stale_seconds is None else stale_seconds
        )
        self.backoff = backoff or webhook_settings.WEBHOOK_RETRY_BACKOFF_SECONDS
        self.clock = clock

    async def run(self, event_id: str) -> Optional[Dict[str, Any]]:
        """Claim and process one event. Returns the outcome, or None if the event was not claimable."""
        now = self.clock()
        event = await event_store.claim_event(self.store, event_id, now=now, stale_seconds=self.stale_seconds)
        if not event:
            logger.debug(f"Event {event_id} not claimable - skipping")
            return None

        attempts = event.get("attempts", 0)
        if attempts > self.max_attempts:
            # Abandoned in processing after its last allowed attempt
            error = ReconciliationError(f"Retries exhausted after {attempts - 1} attempts")
            return await self._fail(event, error, retryable=False, now=now)

        context: Dict[str, Any] = {}
        try:
            result = await asyncio.wait_for(self._attempt(event, context, now), timeout=self.attempt_timeout)
        except asyncio.TimeoutError:
            error = AttemptTimeoutError(f"Reconciliation attempt exceeded {self.attempt_timeout}s")
            return await self._handle_error(event, error, context, now)
        except ReconciliationError as e:
            return await self._handle_error(event, e, context, now)
        except Exception as e:
            logger.exception(f"Unexpected error reconciling event {event_id}")
            return await self._handle_error(event, e, context, now)

        await event_store.mark_processed(self.store, event_id, result, account_id=result.get("account_id"))
        return {
            "event_id": event_id,
            "status": EventStatus.PROCESSED.value,
            "attempts": attempts,
            "result": result,
        }

    async def _attempt(self, event: Dict[str, Any], context: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        decoded = get_decoder(event["provider"]).decode(event.get("raw_payload") or {})
        if decoded.kind == EventKind.IGNORED.value:
            return {"action": "ignored", "event_type": decoded.event_type, "account_id": None}

        async with self.account_locks.hold(decoded.email):
            mapping = None
            if decoded.grants_access:
                account, _ = await resolve_account(
                    self.store,
                    decoded.email,
                    display_name=decoded.buyer_name,
                    source_event_id=event["event_id"],
                )
                context["account_id"] = account["account_id"]
                mapping = await resolve_plan(self.store, decoded.provider, decoded.product_id, decoded.offer_id)
            else:
                # Revocations never create accounts
                account = await find_account(self.store, decoded.email)
                if account:
                    context["account_id"] = account["account_id"]

            return await reconcile_event(
                self.store,
                decoded,
                context.get("account_id"),
                mapping=mapping,
                event_id=event["event_id"],
                now=now,
            )

    async def _handle_error(
        self,
        event: Dict[str, Any],
        error: Exception,
        context: Dict[str, Any],
        now: datetime,
    ) -> Dict[str, Any]:
        retryable = getattr(error, "retryable", True)
        counts_attempt = getattr(error, "counts_attempt", True)
        attempts = event.get("attempts", 0)

        if not retryable:
            return await self._fail(event, error, retryable=False, now=now, account_id=context.get("account_id"))

        if not counts_attempt:
            next_attempt_at = now + timedelta(seconds=webhook_settings.backoff_seconds(attempts, self.backoff))
            await event_store.mark_failed(
                self.store, event["event_id"], error, retryable=True,
                next_attempt_at=next_attempt_at, refund_attempt=True,
                account_id=context.get("account_id"),
            )
            logger.warning(
                f"RECONCILE_FAILED event_id={event['event_id']} transient=true error={error} "
                f"next_attempt_at={next_attempt_at.isoformat()}"
            )
            return self._outcome(event, error, max(attempts - 1, 0), next_attempt_at)

        if attempts >= self.max_attempts:
            return await self._fail(event, error, retryable=False, now=now, account_id=context.get("account_id"))

        next_attempt_at = now + timedelta(seconds=webhook_settings.backoff_seconds(attempts, self.backoff))
        await event_store.mark_failed(
            self.store, event["event_id"], error, retryable=True,
            next_attempt_at=next_attempt_at, account_id=context.get("account_id"),
        )
        logger.warning(
            f"RECONCILE_FAILED event_id={event['event_id']} attempt={attempts}/{self.max_attempts} "
            f"error_type={type(error).__name__} error={error} next_attempt_at={next_attempt_at.isoformat()}"
        )
        return self._outcome(event, error, attempts, next_attempt_at)

    async def _fail(
        self,
        event: Dict[str, Any],
        error: Exception,
        retryable: bool,
        now: datetime,
        account_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Permanent failure: left in error for operators."""
        attempts = event.get("attempts", 0)
        await event_store.mark_failed(self.store, event["event_id"], error, retryable=retryable, account_id=account_id)
        exhausted = getattr(error, "retryable", True)
        if exhausted:
            logger.error(
                f"WEBHOOK_RETRIES_EXHAUSTED event_id={event['event_id']} provider={event.get('provider')} "
                f"email={event.get('email')} attempts={attempts} error={error}"
            )
            await create_audit_log(
                self.store,
                action=AuditAction.WEBHOOK_RETRIES_EXHAUSTED,
                actor_role="SYSTEM",
                account_id=account_id,
                resource_type="webhook_event",
                resource_id=event["event_id"],
                metadata={"attempts": attempts, "error": str(error), "error_type": type(error).__name__},
            )
        else:
            logger.error(
                f"RECONCILE_FAILED event_id={event['event_id']} permanent=true "
                f"error_type={type(error).__name__} error={error}"
            )
        return self._outcome(event, error, attempts, None)

    @staticmethod
    def _outcome(event, error, attempts, next_attempt_at) -> Dict[str, Any]:
        return {
            "event_id": event["event_id"],
            "status": EventStatus.ERROR.value,
            "attempts": attempts,
            "error": str(error) or type(error).__name__,
            "error_type": type(error).__name__,
            "next_attempt_at": next_attempt_at,
        }


async def reprocess_event(
    pipeline: ReconciliationPipeline,
    event_id: str,
    actor_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Operator retry with a fresh attempt budget. Returns None when the event does not exist."""
    store = pipeline.store
    event = await store.get_event(event_id)
    if not event:
        return None

    status = event.get("status")
    if status == EventStatus.PROCESSED.value:
        raise EventNotReprocessableError(f"Event {event_id} is already processed")
    if status == EventStatus.PROCESSING.value:
        started = event.get("processing_started_at")
        stale_before = pipeline.clock() - timedelta(seconds=pipeline.stale_seconds)
        if started is not None and started >= stale_before:
            raise EventNotReprocessableError(f"Event {event_id} is being processed")

    await event_store.reset_for_reprocess(store, event)
    await create_audit_log(
        store,
        action=AuditAction.WEBHOOK_EVENT_REPROCESSED,
        actor_role=UserRole.ROLE_ADMIN.value if actor_id else "SYSTEM",
        actor_id=actor_id,
        resource_type="webhook_event",
        resource_id=event_id,
        metadata={"previous_status": status, "previous_attempts": event.get("attempts", 0)},
    )
    logger.info(f"WEBHOOK_EVENT_REPROCESSED event_id={event_id} previous_status={status} actor_id={actor_id}")

    outcome = await pipeline.run(event_id)
    if outcome is None:
        current = await store.get_event(event_id)
        return {"event_id": event_id, "status": current.get("status") if current else None}
    return outcome
