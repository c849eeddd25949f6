"""Subscription Reconciler - the per-(account, origin) state machine.

    none -> active --renewal--> active
                   --cancellation--> cancelled   (access kept until end_date)
                   --refund--> cancelled         (access revoked now)
                   --expiration--> expired       (access revoked now)

compute_transition() is pure: it reads the current persisted subscription and
account plus the decoded event and returns absolute target values ("set
end_date to X"), never deltas. reconcile_event() re-reads that state inside a
transaction, computes the transition and writes subscription, account and audit
entry together, so a retry after any failure recomputes from what is actually
stored and cannot double-apply.

Policies:
- Renewal extends from the current end date while it is in the future, from
  now once it has passed (no backdated credit).
- Cancellation never shortens paid-for time; tier demotion after end_date is
  the nightly expiry job's concern, not ours.
- Refund/expiration demote the account only when the account's current
  subscription_origin is this provider.
- Lifetime access is never cleared by a purchase or renewal.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from models import (
    AccessTier,
    AuditAction,
    EventKind,
    Subscription,
    SubscriptionStatus,
    utc_now,
)
from services.payload_decoders import DecodedEvent
from services.subscription_store import SubscriptionStore
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

ACTION_CREATED = "created"
ACTION_PURCHASED = "purchased"
ACTION_RENEWED = "renewed"
ACTION_LIFETIME_GRANTED = "lifetime_granted"
ACTION_CANCELLED = "cancelled"
ACTION_REFUNDED = "refunded"
ACTION_EXPIRED = "expired"
ACTION_NOOP = "noop"


@dataclass
class Transition:
    action: str
    subscription: Optional[Dict[str, Any]] = None
    account_updates: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def is_noop(self) -> bool:
        return self.action == ACTION_NOOP


def _noop(reason: str) -> Transition:
    return Transition(action=ACTION_NOOP, reason=reason)


def _is_future(value: Optional[datetime], now: datetime) -> bool:
    return value is not None and value > now


def _earliest(value: Optional[datetime], now: datetime) -> datetime:
    if value is None or value > now:
        return now
    return value


def _is_lifetime_subscription(subscription: Dict[str, Any]) -> bool:
    return subscription.get("end_date") is None and subscription.get("status") == SubscriptionStatus.ACTIVE.value


def _already_applied(subscription: Dict[str, Any], transaction_id: str) -> bool:
    if subscription.get("transaction_id") == transaction_id:
        return True
    return transaction_id in (subscription.get("applied_transactions") or [])


def _base_subscription(
    decoded: DecodedEvent,
    account: Dict[str, Any],
    subscription: Optional[Dict[str, Any]],
    now: datetime,
) -> Dict[str, Any]:
    if subscription:
        return dict(subscription)
    return Subscription(
        account_id=account["account_id"],
        origin=decoded.provider,
        plan_code="",
        start_date=now,
        created_at=now,
        updated_at=now,
    ).model_dump()


def _grant(
    decoded: DecodedEvent,
    mapping: Dict[str, Any],
    account: Dict[str, Any],
    subscription: Optional[Dict[str, Any]],
    now: datetime,
    event_id: Optional[str],
    renewal: bool,
) -> Transition:
    duration_days = mapping.get("duration_days")
    target = _base_subscription(decoded, account, subscription, now)
    applied = list(target.get("applied_transactions") or [])
    if decoded.transaction_id not in applied:
        applied.append(decoded.transaction_id)
    target.update({
        "plan_code": mapping["plan_code"],
        "status": SubscriptionStatus.ACTIVE.value,
        "transaction_id": decoded.transaction_id,
        "applied_transactions": applied,
        "last_event_id": event_id,
        "updated_at": now,
    })

    account_updates = {
        "access_tier": mapping.get("access_tier") or AccessTier.PREMIUM.value,
        "subscription_origin": decoded.provider,
        "subscription_plan": mapping["plan_code"],
        "updated_at": now,
    }

    if duration_days is None:
        target["end_date"] = None
        if not renewal or subscription is None:
            target["start_date"] = now
        account_updates.update({
            "lifetime_access": True,
            "subscription_expires_at": None,
        })
        if not account.get("subscription_started_at") or not account.get("lifetime_access"):
            account_updates["subscription_started_at"] = now
        return Transition(action=ACTION_LIFETIME_GRANTED, subscription=target, account_updates=account_updates)

    duration = timedelta(days=duration_days)
    current_end = subscription.get("end_date") if subscription else None

    if renewal:
        # Additive while time remains, otherwise restart from now
        base = current_end if _is_future(current_end, now) else now
        new_end = base + duration
        action = ACTION_RENEWED
    else:
        # A new purchase restarts the period but never takes away time already paid for
        new_end = now + duration
        if _is_future(current_end, now) and current_end > new_end:
            new_end = current_end
        target["start_date"] = now
        account_updates["subscription_started_at"] = now
        action = ACTION_CREATED if subscription is None else ACTION_PURCHASED

    target["end_date"] = new_end
    if account.get("lifetime_access"):
        # Lifetime holders keep their grant; only plan/origin bookkeeping changes
        account_updates.pop("access_tier", None)
    else:
        account_updates["subscription_expires_at"] = new_end
    return Transition(action=action, subscription=target, account_updates=account_updates)


def _demote_updates(
    decoded: DecodedEvent,
    account: Dict[str, Any],
    revoke_lifetime: bool,
    now: datetime,
) -> Dict[str, Any]:
    if account.get("subscription_origin") != decoded.provider:
        return {}
    if account.get("lifetime_access") and not revoke_lifetime:
        return {}
    updates = {
        "access_tier": AccessTier.FREE.value,
        "subscription_expires_at": _earliest(account.get("subscription_expires_at"), now),
        "updated_at": now,
    }
    if revoke_lifetime:
        updates["lifetime_access"] = False
    return updates


def compute_transition(
    decoded: DecodedEvent,
    account: Optional[Dict[str, Any]],
    subscription: Optional[Dict[str, Any]],
    mapping: Optional[Dict[str, Any]],
    now: Optional[datetime] = None,
    event_id: Optional[str] = None,
) -> Transition:
    """Next state for (account, decoded.provider) given the event. Pure."""
    now = now or utc_now()
    kind = decoded.kind

    if kind == EventKind.IGNORED.value:
        return _noop(f"event {decoded.event_type} is not reconciled")
    if account is None:
        return _noop("no account for this email")

    if kind in (EventKind.PURCHASE.value, EventKind.RENEWAL.value):
        if mapping is None:
            raise ValueError("plan mapping required for purchase/renewal")
        if subscription and _already_applied(subscription, decoded.transaction_id):
            return _noop(f"transaction {decoded.transaction_id} already applied")

        if kind == EventKind.RENEWAL.value:
            if subscription is None:
                logger.warning(
                    f"RENEWAL_WITHOUT_SUBSCRIPTION provider={decoded.provider} email={decoded.email} "
                    f"transaction_id={decoded.transaction_id} - applying as purchase"
                )
                return _grant(decoded, mapping, account, None, now, event_id, renewal=False)
            if _is_lifetime_subscription(subscription):
                return _noop("lifetime subscription does not renew")
            return _grant(decoded, mapping, account, subscription, now, event_id, renewal=True)

        if subscription and _is_lifetime_subscription(subscription) and mapping.get("duration_days") is not None:
            return _noop("lifetime subscription already granted")
        return _grant(decoded, mapping, account, subscription, now, event_id, renewal=False)

    if subscription is None:
        return _noop(f"no {decoded.provider} subscription to {kind}")

    target = dict(subscription)
    target.update({"last_event_id": event_id, "updated_at": now})

    if kind == EventKind.CANCELLATION.value:
        if subscription.get("status") != SubscriptionStatus.ACTIVE.value:
            return _noop(f"subscription already {subscription.get('status')}")
        target["status"] = SubscriptionStatus.CANCELLED.value
        return Transition(action=ACTION_CANCELLED, subscription=target)

    if kind == EventKind.REFUND.value:
        was_lifetime = subscription.get("end_date") is None
        target["status"] = SubscriptionStatus.CANCELLED.value
        target["end_date"] = _earliest(subscription.get("end_date"), now)
        return Transition(
            action=ACTION_REFUNDED,
            subscription=target,
            account_updates=_demote_updates(decoded, account, revoke_lifetime=was_lifetime, now=now),
        )

    if kind == EventKind.EXPIRATION.value:
        if _is_lifetime_subscription(subscription):
            return _noop("lifetime subscription does not expire")
        if subscription.get("status") == SubscriptionStatus.EXPIRED.value:
            return _noop("subscription already expired")
        target["status"] = SubscriptionStatus.EXPIRED.value
        target["end_date"] = _earliest(subscription.get("end_date"), now)
        return Transition(
            action=ACTION_EXPIRED,
            subscription=target,
            account_updates=_demote_updates(decoded, account, revoke_lifetime=False, now=now),
        )

    return _noop(f"unhandled event kind {kind}")


def _result(transition: Transition, account_id: Optional[str]) -> Dict[str, Any]:
    result: Dict[str, Any] = {"action": transition.action, "account_id": account_id}
    if transition.reason:
        result["reason"] = transition.reason
    if transition.subscription:
        result.update({
            "subscription_id": transition.subscription.get("subscription_id"),
            "subscription_status": transition.subscription.get("status"),
            "end_date": transition.subscription.get("end_date"),
            "plan_code": transition.subscription.get("plan_code"),
        })
    return result


async def reconcile_event(
    store: SubscriptionStore,
    decoded: DecodedEvent,
    account_id: Optional[str],
    mapping: Optional[Dict[str, Any]] = None,
    event_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Apply one decoded event atomically. Returns a result summary for the event row."""
    now = now or utc_now()
    if account_id is None:
        transition = compute_transition(decoded, None, None, mapping, now=now, event_id=event_id)
        return _result(transition, None)

    async with store.transaction() as session:
        account = await store.get_account(account_id, session=session)
        subscription = None
        if account:
            subscription = await store.find_subscription(account_id, decoded.provider, session=session)
        transition = compute_transition(decoded, account, subscription, mapping, now=now, event_id=event_id)
        if transition.is_noop:
            return _result(transition, account_id)

        await store.save_subscription(transition.subscription, session=session)
        if transition.account_updates:
            await store.update_account(account_id, transition.account_updates, session=session)

        account_after = {**account, **transition.account_updates}
        await create_audit_log(
            store,
            action=AuditAction.SUBSCRIPTION_RECONCILED,
            actor_role="SYSTEM",
            account_id=account_id,
            resource_type="subscription",
            resource_id=transition.subscription.get("subscription_id"),
            before_state={
                "subscription": subscription,
                "access_tier": account.get("access_tier"),
                "subscription_expires_at": account.get("subscription_expires_at"),
                "lifetime_access": account.get("lifetime_access"),
            },
            after_state={
                "subscription": transition.subscription,
                "access_tier": account_after.get("access_tier"),
                "subscription_expires_at": account_after.get("subscription_expires_at"),
                "lifetime_access": account_after.get("lifetime_access"),
            },
            metadata={
                "event_id": event_id,
                "provider": decoded.provider,
                "event_type": decoded.event_type,
                "transaction_id": decoded.transaction_id,
                "transition": transition.action,
            },
            session=session,
        )

    logger.info(
        f"RECONCILE_APPLIED event_id={event_id} provider={decoded.provider} account_id={account_id} "
        f"action={transition.action} end_date={transition.subscription.get('end_date')}"
    )
    return _result(transition, account_id)
