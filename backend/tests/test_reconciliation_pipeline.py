"""
Integration-style tests for the reconciliation pipeline over the in-memory store.

Covers the end-to-end scenarios: purchase grants access, a missing plan mapping
leaves the event retryable and a later retry converges, retries stop at the
ceiling, revocations never create accounts, and manual reprocess rules.
"""
import asyncio
import pytest
from datetime import timedelta

from services import reconciliation_pipeline
from services.errors import TransientStorageError, EventNotReprocessableError
from services.reconciliation_pipeline import ReconciliationPipeline, reprocess_event
from memory_store import InMemorySubscriptionStore
from factories import NOW, hotmart_payload, hotmart_subscription_payload, add_account, add_subscription, add_mapping, add_event

pytestmark = pytest.mark.asyncio


def _account_state(account):
    return {
        key: account[key]
        for key in ("access_tier", "subscription_expires_at", "subscription_plan",
                    "subscription_origin", "lifetime_access")
    }


async def test_purchase_creates_account_and_grants_plan(store, pipeline):
    add_mapping(store, product_id="P1", plan_code="premium_30", duration_days=30)
    event_id = add_event(store, "hotmart", hotmart_payload(email="a@x.com", product_id="P1"))

    outcome = await pipeline.run(event_id)

    assert outcome["status"] == "processed"
    assert outcome["attempts"] == 1
    assert outcome["result"]["action"] == "created"
    account = store.account_by_email("a@x.com")
    assert account["access_tier"] == "premium"
    assert account["subscription_expires_at"] == NOW + timedelta(days=30)
    assert account["subscription_plan"] == "premium_30"
    event = store.events[event_id]
    assert event["status"] == "processed"
    assert event["related_account_id"] == account["account_id"]
    assert event["error"] is None


async def test_missing_mapping_leaves_event_retryable(store, pipeline):
    event_id = add_event(store, "hotmart", hotmart_payload(product_id="P1"))

    outcome = await pipeline.run(event_id)

    assert outcome["status"] == "error"
    assert outcome["error_type"] == "MappingNotFoundError"
    assert outcome["next_attempt_at"] == NOW + timedelta(seconds=60)
    event = store.events[event_id]
    assert event["status"] == "error"
    assert event["retryable"] is True
    assert event["attempts"] == 1
    assert "No active plan mapping" in event["error"]
    assert event["next_attempt_at"] == NOW + timedelta(seconds=60)

    # The account exists but has nothing granted
    account = store.account_by_email("a@x.com")
    assert event["related_account_id"] == account["account_id"]
    assert account["access_tier"] == "free"
    assert account["subscription_expires_at"] is None
    assert store.subscriptions == {}


async def test_retry_after_mapping_is_added_converges(store, pipeline):
    event_id = add_event(store, "hotmart", hotmart_payload(product_id="P1"))
    await pipeline.run(event_id)

    add_mapping(store, product_id="P1")
    outcome = await pipeline.run(event_id)

    assert outcome["status"] == "processed"
    assert store.events[event_id]["attempts"] == 2

    # Same end state as if the mapping had existed from the start
    fresh = InMemorySubscriptionStore()
    add_mapping(fresh, product_id="P1")
    fresh_event_id = add_event(fresh, "hotmart", hotmart_payload(product_id="P1"))
    await ReconciliationPipeline(fresh, clock=lambda: NOW).run(fresh_event_id)

    assert _account_state(store.account_by_email("a@x.com")) == _account_state(fresh.account_by_email("a@x.com"))
    assert len(store.accounts) == 1


async def test_processed_event_is_not_claimed_again(store, pipeline):
    add_mapping(store)
    event_id = add_event(store, "hotmart", hotmart_payload())
    await pipeline.run(event_id)

    assert await pipeline.run(event_id) is None
    reconciled = [a for a in store.audit_logs if a["action"] == "SUBSCRIPTION_RECONCILED"]
    assert len(reconciled) == 1


async def test_same_transaction_under_another_event_name_applies_once(store, pipeline):
    add_mapping(store)
    first = add_event(store, "hotmart", hotmart_payload(event="PURCHASE_APPROVED", transaction="T-1"))
    second = add_event(store, "hotmart", hotmart_payload(event="PURCHASE_COMPLETE", transaction="T-1"))

    await pipeline.run(first)
    outcome = await pipeline.run(second)

    assert outcome["status"] == "processed"
    assert outcome["result"]["action"] == "noop"
    assert store.account_by_email("a@x.com")["subscription_expires_at"] == NOW + timedelta(days=30)


async def test_missing_event_returns_none(pipeline):
    assert await pipeline.run("does-not-exist") is None


async def test_ignored_event_is_processed_without_side_effects(store, pipeline):
    event_id = add_event(store, "hotmart", hotmart_payload(event="PURCHASE_DELAYED"))
    outcome = await pipeline.run(event_id)
    assert outcome["status"] == "processed"
    assert outcome["result"]["action"] == "ignored"
    assert store.accounts == {}


async def test_cancellation_for_unknown_email_creates_no_account(store, pipeline):
    event_id = add_event(store, "hotmart", hotmart_payload(event="SUBSCRIPTION_CANCELLATION", email="ghost@x.com"))
    outcome = await pipeline.run(event_id)
    assert outcome["status"] == "processed"
    assert outcome["result"]["action"] == "noop"
    assert store.accounts == {}


async def test_subscription_cancellation_callback_marks_subscription_cancelled(store, pipeline):
    account = add_account(store, email="a@x.com", access_tier="premium", subscription_origin="hotmart",
                          subscription_expires_at=NOW + timedelta(days=20))
    add_subscription(store, account, end_date=NOW + timedelta(days=20), transaction_id="HP-0001")
    event_id = add_event(store, "hotmart", hotmart_subscription_payload(subscription_id=4455, email="a@x.com"))

    outcome = await pipeline.run(event_id)

    assert outcome["status"] == "processed"
    assert outcome["result"]["action"] == "cancelled"
    assert store.events[event_id]["transaction_id"] == "4455"
    subscription = store.subscriptions[(account["account_id"], "hotmart")]
    assert subscription["status"] == "cancelled"
    assert subscription["end_date"] == NOW + timedelta(days=20)
    assert store.accounts[account["account_id"]]["access_tier"] == "premium"


async def test_refund_revokes_access_end_to_end(store, pipeline):
    account = add_account(store, email="a@x.com", access_tier="premium", subscription_origin="hotmart",
                          subscription_expires_at=NOW + timedelta(days=20))
    add_subscription(store, account, end_date=NOW + timedelta(days=20), transaction_id="T-1")
    event_id = add_event(store, "hotmart", hotmart_payload(event="PURCHASE_REFUNDED", transaction="T-1"))

    outcome = await pipeline.run(event_id)

    assert outcome["result"]["action"] == "refunded"
    assert store.accounts[account["account_id"]]["access_tier"] == "free"


async def test_transient_failure_does_not_consume_an_attempt(store, pipeline):
    add_mapping(store)
    event_id = add_event(store, "hotmart", hotmart_payload())
    store.fail_on("save_subscription", TransientStorageError("not primary"))

    outcome = await pipeline.run(event_id)

    assert outcome["status"] == "error"
    assert outcome["attempts"] == 0
    event = store.events[event_id]
    assert event["attempts"] == 0
    assert event["retryable"] is True
    assert event["error_type"] == "TransientStorageError"
    assert store.subscriptions == {}

    outcome = await pipeline.run(event_id)
    assert outcome["status"] == "processed"
    assert outcome["attempts"] == 1


async def test_slow_attempt_times_out_as_retryable_error(store, monkeypatch):
    async def slow_resolve_plan(*args, **kwargs):
        await asyncio.sleep(5)

    monkeypatch.setattr(reconciliation_pipeline, "resolve_plan", slow_resolve_plan)
    pipeline = ReconciliationPipeline(store, clock=lambda: NOW, attempt_timeout=0.05)
    event_id = add_event(store, "hotmart", hotmart_payload())

    outcome = await pipeline.run(event_id)

    assert outcome["error_type"] == "AttemptTimeoutError"
    event = store.events[event_id]
    assert event["status"] == "error"
    assert event["retryable"] is True
    assert len(pipeline.account_locks) == 0


async def test_retries_stop_at_the_ceiling(store):
    pipeline = ReconciliationPipeline(store, clock=lambda: NOW, max_attempts=3)
    event_id = add_event(store, "hotmart", hotmart_payload(product_id="UNMAPPED"))

    for _ in range(3):
        outcome = await pipeline.run(event_id)

    assert outcome["status"] == "error"
    assert outcome["next_attempt_at"] is None
    event = store.events[event_id]
    assert event["attempts"] == 3
    assert event["retryable"] is False
    assert event["next_attempt_at"] is None
    exhausted = [a for a in store.audit_logs if a["action"] == "WEBHOOK_RETRIES_EXHAUSTED"]
    assert len(exhausted) == 1
    assert exhausted[0]["resource_id"] == event_id

    assert await pipeline.run(event_id) is None
    assert store.events[event_id]["attempts"] == 3


async def test_malformed_stored_payload_fails_permanently(store, pipeline):
    event_id = add_event(store, "hotmart", hotmart_payload())
    store.events[event_id]["raw_payload"]["data"]["buyer"] = {}

    outcome = await pipeline.run(event_id)

    assert outcome["error_type"] == "MalformedPayloadError"
    event = store.events[event_id]
    assert event["retryable"] is False
    assert event["attempts"] == 1
    assert not [a for a in store.audit_logs if a["action"] == "WEBHOOK_RETRIES_EXHAUSTED"]


async def test_stale_processing_event_is_redriven(store, pipeline):
    add_mapping(store)
    event_id = add_event(store, "hotmart", hotmart_payload(), status="processing", attempts=1,
                         processing_started_at=NOW - timedelta(hours=1))

    outcome = await pipeline.run(event_id)

    assert outcome["status"] == "processed"
    assert outcome["attempts"] == 2


async def test_fresh_processing_event_is_left_alone(store, pipeline):
    event_id = add_event(store, "hotmart", hotmart_payload(), status="processing", attempts=1,
                         processing_started_at=NOW - timedelta(seconds=10))
    assert await pipeline.run(event_id) is None
    assert store.events[event_id]["attempts"] == 1


async def test_stale_processing_event_past_the_ceiling_is_exhausted(store, pipeline):
    add_mapping(store)
    event_id = add_event(store, "hotmart", hotmart_payload(), status="processing", attempts=5,
                         processing_started_at=NOW - timedelta(hours=1))

    outcome = await pipeline.run(event_id)

    assert outcome["status"] == "error"
    event = store.events[event_id]
    assert event["status"] == "error"
    assert event["retryable"] is False
    assert "Retries exhausted" in event["error"]
    assert store.accounts == {}


async def test_concurrent_events_for_one_email_create_one_account(store, pipeline):
    add_mapping(store)
    first = add_event(store, "hotmart", hotmart_payload(transaction="T-1"))
    second = add_event(store, "hotmart", hotmart_payload(transaction="T-2", recurrence=2))

    outcomes = await asyncio.gather(pipeline.run(first), pipeline.run(second))

    assert [o["status"] for o in outcomes] == ["processed", "processed"]
    assert len(store.accounts) == 1


async def test_concurrent_renewals_both_extend(store, pipeline):
    add_mapping(store)
    account = add_account(store, email="a@x.com")
    add_subscription(store, account, end_date=NOW + timedelta(days=10))
    first = add_event(store, "hotmart", hotmart_payload(transaction="T-2", recurrence=2))
    second = add_event(store, "hotmart", hotmart_payload(transaction="T-3", recurrence=3))

    await asyncio.gather(pipeline.run(first), pipeline.run(second))

    assert store.subscriptions[(account["account_id"], "hotmart")]["end_date"] == NOW + timedelta(days=70)


async def test_reprocess_exhausted_event_with_fresh_budget(store, pipeline):
    event_id = add_event(store, "hotmart", hotmart_payload(), status="error", attempts=5, retryable=False,
                         error="No active plan mapping")
    add_mapping(store)

    outcome = await reprocess_event(pipeline, event_id, actor_id="admin-1")

    assert outcome["status"] == "processed"
    assert outcome["attempts"] == 1
    entry = next(a for a in store.audit_logs if a["action"] == "WEBHOOK_EVENT_REPROCESSED")
    assert entry["actor_id"] == "admin-1"
    assert entry["metadata"]["previous_attempts"] == 5


async def test_reprocess_processed_event_is_refused(store, pipeline):
    event_id = add_event(store, "hotmart", hotmart_payload(), status="processed")
    with pytest.raises(EventNotReprocessableError):
        await reprocess_event(pipeline, event_id)


async def test_reprocess_in_flight_event_is_refused(store, pipeline):
    event_id = add_event(store, "hotmart", hotmart_payload(), status="processing",
                         processing_started_at=NOW - timedelta(seconds=5))
    with pytest.raises(EventNotReprocessableError):
        await reprocess_event(pipeline, event_id)


async def test_reprocess_missing_event_returns_none(pipeline):
    assert await reprocess_event(pipeline, "nope") is None
