"""Subscription Store - persistence interface for the reconciliation engine.

Every service in the ingestion/reconciliation pipeline receives a store
instance explicitly instead of reaching for the global database handle, so
the same code runs against MongoDB in production and against an in-memory
implementation in tests.

Collections:
- webhook_events   one row per provider notification (idempotency_key unique)
- plan_mappings    provider product/offer -> internal plan
- accounts         shared user accounts (email unique, username unique)
- subscriptions    one row per (account_id, origin)
- audit_logs       append-only audit trail

Multi-document writes (subscription + account + audit) go through
`transaction()`, which yields a session to pass to each write.
"""
import functools
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, AsyncIterator

from pymongo import ReturnDocument, ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from models import EventStatus
from services.errors import (
    AccountConflictError,
    PlanMappingConflictError,
    TransientStorageError,
)

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = [EventStatus.RECEIVED.value, EventStatus.ERROR.value]


class SubscriptionStore(ABC):
    """Abstract storage interface used by the ingestion and reconciliation services."""

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @abstractmethod
    def transaction(self):
        """Async context manager yielding a session; all writes made with it commit or abort together."""

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_event_if_absent(self, event: Dict[str, Any]) -> Tuple[bool, Dict[str, Any]]:
        """Insert unless a row with the same idempotency_key exists. Returns (created, stored_row)."""

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def claim_event(self, event_id: str, now: datetime, stale_before: datetime) -> Optional[Dict[str, Any]]:
        """Atomically move a claimable event to `processing` and count the attempt.

        Claimable: status received/error and retryable, or status processing
        with processing_started_at older than stale_before (abandoned by a
        crashed worker). Returns the updated row or None if not claimable.
        """

    @abstractmethod
    async def update_event(self, event_id: str, fields: Dict[str, Any], inc: Optional[Dict[str, int]] = None) -> None:
        pass

    @abstractmethod
    async def find_due_events(
        self,
        now: datetime,
        max_attempts: int,
        received_before: datetime,
        stale_before: datetime,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """Events the retry sweep should re-drive, oldest first."""

    @abstractmethod
    async def list_events(self, filters: Dict[str, Any], skip: int = 0, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest first, without raw payload."""

    @abstractmethod
    async def count_events_by_status(self) -> Dict[str, int]:
        pass

    @abstractmethod
    async def count_exhausted_events(self, max_attempts: int) -> int:
        pass

    # ------------------------------------------------------------------
    # Plan mappings
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_active_mapping(self, provider: str, product_id: str, offer_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Exact match on offer_id (None matches product-only mappings)."""

    @abstractmethod
    async def get_mapping(self, mapping_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_mappings(self, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_mapping(self, mapping: Dict[str, Any]) -> None:
        """Raises PlanMappingConflictError when an active mapping with the same key exists."""

    @abstractmethod
    async def update_mapping(self, mapping_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Returns the updated row; raises PlanMappingConflictError on key collision."""

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_account_by_email(self, email: str, session=None) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_account(self, account_id: str, session=None) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_account(self, account: Dict[str, Any]) -> None:
        """Insert-if-absent on the unique email/username constraints; raises AccountConflictError."""

    @abstractmethod
    async def update_account(self, account_id: str, fields: Dict[str, Any], session=None) -> None:
        pass

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_subscription(self, account_id: str, origin: str, session=None) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def save_subscription(self, subscription: Dict[str, Any], session=None) -> None:
        """Upsert keyed on (account_id, origin); subscription_id/created_at are kept from the first insert.

        applied_transactions is merged into the stored set, never replaced.
        """

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_audit_log(self, entry: Dict[str, Any], session=None) -> None:
        pass


def _is_transient(exc: PyMongoError) -> bool:
    if isinstance(exc, ConnectionFailure):
        return True
    return exc.has_error_label("TransientTransactionError")


def translate_storage_errors(func):
    """Re-raise infrastructure-level pymongo failures as TransientStorageError."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            if _is_transient(e):
                raise TransientStorageError(f"Storage unavailable: {e}") from e
            raise
    return wrapper


def _duplicate_key_field(exc: DuplicateKeyError) -> Optional[str]:
    details = exc.details or {}
    key_pattern = details.get("keyPattern") or details.get("keyValue") or {}
    keys = list(key_pattern.keys())
    return keys[0] if keys else None


class MongoSubscriptionStore(SubscriptionStore):
    """MongoDB implementation backed by a Motor client/database pair."""

    def __init__(self, client, db):
        self.client = client
        self.db = db

    async def create_indexes(self):
        """Create the indexes the invariants rely on. Safe to run on every startup."""
        db = self.db
        await db.webhook_events.create_index("event_id", unique=True)
        await db.webhook_events.create_index("idempotency_key", unique=True)
        await db.webhook_events.create_index([("status", ASCENDING), ("next_attempt_at", ASCENDING)])
        await db.webhook_events.create_index([("email", ASCENDING), ("created_at", DESCENDING)])
        await db.webhook_events.create_index([("created_at", DESCENDING)])

        await db.plan_mappings.create_index("mapping_id", unique=True)
        await db.plan_mappings.create_index(
            [("provider", ASCENDING), ("product_id", ASCENDING), ("offer_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"active": True},
            name="active_mapping_key",
        )

        await db.accounts.create_index("account_id", unique=True)
        await db.accounts.create_index("email", unique=True)
        await db.accounts.create_index("username", unique=True)

        await db.subscriptions.create_index(
            [("account_id", ASCENDING), ("origin", ASCENDING)], unique=True
        )
        await db.subscriptions.create_index("subscription_id", unique=True)

        await db.audit_logs.create_index([("account_id", ASCENDING), ("timestamp", DESCENDING)])
        await db.audit_logs.create_index("action")
        logger.info("Subscription store indexes created/verified")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    yield session
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            if _is_transient(e):
                raise TransientStorageError(f"Transaction aborted: {e}") from e
            raise

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    @translate_storage_errors
    async def insert_event_if_absent(self, event):
        result = await self.db.webhook_events.update_one(
            {"idempotency_key": event["idempotency_key"]},
            {"$setOnInsert": event},
            upsert=True,
        )
        created = result.upserted_id is not None
        stored = await self.db.webhook_events.find_one(
            {"idempotency_key": event["idempotency_key"]}, {"_id": 0}
        )
        return created, stored

    @translate_storage_errors
    async def get_event(self, event_id):
        return await self.db.webhook_events.find_one({"event_id": event_id}, {"_id": 0})

    @translate_storage_errors
    async def claim_event(self, event_id, now, stale_before):
        return await self.db.webhook_events.find_one_and_update(
            {
                "event_id": event_id,
                "$or": [
                    {"status": {"$in": CLAIMABLE_STATUSES}, "retryable": {"$ne": False}},
                    {
                        "status": EventStatus.PROCESSING.value,
                        "processing_started_at": {"$lt": stale_before},
                    },
                ],
            },
            {
                "$set": {
                    "status": EventStatus.PROCESSING.value,
                    "processing_started_at": now,
                    "updated_at": now,
                },
                "$inc": {"attempts": 1},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    @translate_storage_errors
    async def update_event(self, event_id, fields, inc=None):
        update = {"$set": fields}
        if inc:
            update["$inc"] = inc
        await self.db.webhook_events.update_one({"event_id": event_id}, update)

    @translate_storage_errors
    async def find_due_events(self, now, max_attempts, received_before, stale_before, limit):
        cursor = self.db.webhook_events.find(
            {
                "$or": [
                    {
                        "status": EventStatus.RECEIVED.value,
                        "created_at": {"$lt": received_before},
                        "retryable": {"$ne": False},
                        "attempts": {"$lt": max_attempts},
                    },
                    {
                        "status": EventStatus.ERROR.value,
                        "retryable": {"$ne": False},
                        "attempts": {"$lt": max_attempts},
                        "$or": [
                            {"next_attempt_at": None},
                            {"next_attempt_at": {"$lte": now}},
                        ],
                    },
                    {
                        "status": EventStatus.PROCESSING.value,
                        "processing_started_at": {"$lt": stale_before},
                    },
                ]
            },
            {"_id": 0, "event_id": 1, "status": 1, "attempts": 1, "email": 1},
        ).sort("created_at", ASCENDING).limit(limit)
        return await cursor.to_list(length=limit)

    @translate_storage_errors
    async def list_events(self, filters, skip=0, limit=50):
        cursor = self.db.webhook_events.find(
            filters, {"_id": 0, "raw_payload": 0}
        ).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return await cursor.to_list(length=limit)

    @translate_storage_errors
    async def count_events_by_status(self):
        pipeline = [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
        rows = await self.db.webhook_events.aggregate(pipeline).to_list(length=None)
        return {row["_id"]: row["count"] for row in rows}

    @translate_storage_errors
    async def count_exhausted_events(self, max_attempts):
        return await self.db.webhook_events.count_documents({
            "status": EventStatus.ERROR.value,
            "$or": [{"retryable": False}, {"attempts": {"$gte": max_attempts}}],
        })

    # ------------------------------------------------------------------
    # Plan mappings
    # ------------------------------------------------------------------

    @translate_storage_errors
    async def find_active_mapping(self, provider, product_id, offer_id):
        return await self.db.plan_mappings.find_one(
            {"provider": provider, "product_id": product_id, "offer_id": offer_id, "active": True},
            {"_id": 0},
        )

    @translate_storage_errors
    async def get_mapping(self, mapping_id):
        return await self.db.plan_mappings.find_one({"mapping_id": mapping_id}, {"_id": 0})

    @translate_storage_errors
    async def list_mappings(self, filters):
        cursor = self.db.plan_mappings.find(filters, {"_id": 0}).sort(
            [("provider", ASCENDING), ("product_id", ASCENDING), ("offer_id", ASCENDING)]
        )
        return await cursor.to_list(length=1000)

    @translate_storage_errors
    async def insert_mapping(self, mapping):
        try:
            await self.db.plan_mappings.insert_one(dict(mapping))
        except DuplicateKeyError as e:
            raise PlanMappingConflictError(
                f"Active mapping already exists for provider={mapping.get('provider')} "
                f"product={mapping.get('product_id')} offer={mapping.get('offer_id')}"
            ) from e

    @translate_storage_errors
    async def update_mapping(self, mapping_id, fields):
        try:
            return await self.db.plan_mappings.find_one_and_update(
                {"mapping_id": mapping_id},
                {"$set": fields},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as e:
            raise PlanMappingConflictError(
                f"Update of mapping {mapping_id} collides with another active mapping"
            ) from e

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    @translate_storage_errors
    async def find_account_by_email(self, email, session=None):
        return await self.db.accounts.find_one({"email": email}, {"_id": 0}, session=session)

    @translate_storage_errors
    async def get_account(self, account_id, session=None):
        return await self.db.accounts.find_one({"account_id": account_id}, {"_id": 0}, session=session)

    @translate_storage_errors
    async def insert_account(self, account):
        try:
            await self.db.accounts.insert_one(dict(account))
        except DuplicateKeyError as e:
            raise AccountConflictError(
                f"Account insert conflicted on {_duplicate_key_field(e) or 'unique key'}"
            ) from e

    @translate_storage_errors
    async def update_account(self, account_id, fields, session=None):
        await self.db.accounts.update_one(
            {"account_id": account_id}, {"$set": fields}, session=session
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @translate_storage_errors
    async def find_subscription(self, account_id, origin, session=None):
        return await self.db.subscriptions.find_one(
            {"account_id": account_id, "origin": origin}, {"_id": 0}, session=session
        )

    @translate_storage_errors
    async def save_subscription(self, subscription, session=None):
        fields = dict(subscription)
        on_insert = {
            "subscription_id": fields.pop("subscription_id"),
            "created_at": fields.pop("created_at"),
        }
        applied = fields.pop("applied_transactions", None) or []
        await self.db.subscriptions.update_one(
            {"account_id": fields["account_id"], "origin": fields["origin"]},
            {
                "$set": fields,
                "$setOnInsert": on_insert,
                "$addToSet": {"applied_transactions": {"$each": list(applied)}},
            },
            upsert=True,
            session=session,
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    @translate_storage_errors
    async def insert_audit_log(self, entry, session=None):
        await self.db.audit_logs.insert_one(dict(entry), session=session)
