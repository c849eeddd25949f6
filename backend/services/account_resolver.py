"""Account Resolver - find-or-create the account an event refers to.

Accounts are keyed by normalized email (unique index). Creation is an
insert-if-absent; when a concurrent worker wins the race the unique index
rejects our insert and we return the winner's row instead.
"""
import asyncio
import logging
import re
import secrets
from typing import Optional, Dict, Any, Tuple

from auth import hash_password, generate_initial_password
from models import Account, AuditAction
from services.errors import AccountConflictError
from services.subscription_store import SubscriptionStore
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

USERNAME_MAX_BASE = 20
USERNAME_INSERT_ATTEMPTS = 5


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def build_username(email: str) -> str:
    """Local part of the email, reduced to [a-z0-9_], plus a random suffix."""
    local = normalize_email(email).split("@", 1)[0]
    base = re.sub(r"[^a-z0-9_]", "", local.replace(".", "_").replace("-", "_"))[:USERNAME_MAX_BASE]
    return f"{base or 'user'}_{secrets.token_hex(3)}"


async def find_account(store: SubscriptionStore, email: str) -> Optional[Dict[str, Any]]:
    return await store.find_account_by_email(normalize_email(email))


async def resolve_account(
    store: SubscriptionStore,
    email: str,
    display_name: Optional[str] = None,
    source_event_id: Optional[str] = None,
) -> Tuple[Dict[str, Any], bool]:
    """Return (account, created).

    A conflict on email means another worker created the account first: the
    existing row is returned. A conflict on username is retried with a fresh
    suffix.
    """
    email = normalize_email(email)
    existing = await store.find_account_by_email(email)
    if existing:
        return existing, False

    last_error: Optional[AccountConflictError] = None
    for _ in range(USERNAME_INSERT_ATTEMPTS):
        password_hash = await asyncio.to_thread(hash_password, generate_initial_password())
        account = Account(
            email=email,
            username=build_username(email),
            display_name=display_name,
            password_hash=password_hash,
        )
        doc = account.model_dump()
        try:
            await store.insert_account(doc)
        except AccountConflictError as e:
            last_error = e
            winner = await store.find_account_by_email(email)
            if winner:
                logger.info(f"Account for {email} created concurrently - using existing row")
                return winner, False
            continue

        logger.info(f"ACCOUNT_CREATED email={email} account_id={doc['account_id']} username={doc['username']}")
        await create_audit_log(
            store,
            action=AuditAction.ACCOUNT_CREATED_FROM_WEBHOOK,
            actor_role="SYSTEM",
            account_id=doc["account_id"],
            resource_type="account",
            resource_id=doc["account_id"],
            metadata={"source_event_id": source_event_id, "username": doc["username"]},
        )
        return doc, True

    raise last_error or AccountConflictError(f"Could not create account for {email}")
