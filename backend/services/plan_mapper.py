"""Product-to-Plan Mapper.

Resolves a provider product/offer to the internal plan descriptor and backs
the admin CRUD for mappings. The reconciliation pipeline only ever reads.

Lookup order: exact (provider, product, offer), then product-only
(offer_id = None). At most one active mapping exists per key, enforced by a
partial unique index.
"""
import logging
from typing import Optional, Dict, Any, List

from models import (
    AuditAction,
    PlanMapping,
    PlanMappingCreate,
    PlanMappingUpdate,
    UserRole,
    utc_now,
)
from services.errors import MappingNotFoundError, PlanMappingConflictError
from services.subscription_store import SubscriptionStore
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


async def resolve_plan(
    store: SubscriptionStore,
    provider: str,
    product_id: str,
    offer_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Return the active mapping for product/offer or raise MappingNotFoundError."""
    if offer_id:
        mapping = await store.find_active_mapping(provider, product_id, offer_id)
        if mapping:
            return mapping
    mapping = await store.find_active_mapping(provider, product_id, None)
    if mapping:
        return mapping
    raise MappingNotFoundError(provider, product_id, offer_id)


async def list_mappings(
    store: SubscriptionStore,
    provider: Optional[str] = None,
    active: Optional[bool] = None,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if provider:
        query["provider"] = provider
    if active is not None:
        query["active"] = active
    return await store.list_mappings(query)


async def get_mapping(store: SubscriptionStore, mapping_id: str) -> Optional[Dict[str, Any]]:
    return await store.get_mapping(mapping_id)


async def _ensure_no_active_duplicate(
    store: SubscriptionStore,
    provider: str,
    product_id: str,
    offer_id: Optional[str],
    exclude_mapping_id: Optional[str] = None,
) -> None:
    existing = await store.find_active_mapping(provider, product_id, offer_id)
    if existing and existing.get("mapping_id") != exclude_mapping_id:
        raise PlanMappingConflictError(
            f"Active mapping {existing['mapping_id']} already covers provider={provider} "
            f"product={product_id} offer={offer_id}"
        )


async def create_mapping(
    store: SubscriptionStore,
    data: PlanMappingCreate,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    mapping = PlanMapping(**data.model_dump())
    doc = mapping.model_dump()
    if doc["active"]:
        await _ensure_no_active_duplicate(store, doc["provider"], doc["product_id"], doc["offer_id"])
    # The unique index still catches a concurrent create that passed the check above
    await store.insert_mapping(doc)

    await create_audit_log(
        store,
        action=AuditAction.PLAN_MAPPING_CREATED,
        actor_role=UserRole.ROLE_ADMIN.value,
        actor_id=actor_id,
        resource_type="plan_mapping",
        resource_id=doc["mapping_id"],
        after_state=doc,
    )
    logger.info(
        f"Plan mapping created: {doc['provider']} product={doc['product_id']} "
        f"offer={doc['offer_id']} -> {doc['plan_code']}"
    )
    return doc


async def update_mapping(
    store: SubscriptionStore,
    mapping_id: str,
    data: PlanMappingUpdate,
    actor_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Partial update. Returns None when the mapping does not exist."""
    before = await store.get_mapping(mapping_id)
    if not before:
        return None

    changes = data.model_dump(exclude_unset=True, mode="json")
    lifetime = changes.pop("lifetime", None)
    if lifetime:
        changes["duration_days"] = None
    elif "duration_days" in changes and changes["duration_days"] is None:
        raise ValueError("duration_days must be a positive integer; set lifetime to grant lifetime access")
    for key in ("product_id", "plan_code"):
        if key in changes:
            if not (changes[key] or "").strip():
                raise ValueError(f"{key} must not be blank")
            changes[key] = changes[key].strip()
    if "offer_id" in changes:
        changes["offer_id"] = (changes["offer_id"] or "").strip() or None

    merged = {**before, **changes}
    if merged.get("active"):
        await _ensure_no_active_duplicate(
            store,
            merged["provider"],
            merged["product_id"],
            merged.get("offer_id"),
            exclude_mapping_id=mapping_id,
        )

    changes["updated_at"] = utc_now()
    after = await store.update_mapping(mapping_id, changes)

    action = AuditAction.PLAN_MAPPING_UPDATED
    if before.get("active") and after and not after.get("active"):
        action = AuditAction.PLAN_MAPPING_DEACTIVATED
    await create_audit_log(
        store,
        action=action,
        actor_role=UserRole.ROLE_ADMIN.value,
        actor_id=actor_id,
        resource_type="plan_mapping",
        resource_id=mapping_id,
        before_state=before,
        after_state=after,
    )
    return after


async def deactivate_mapping(
    store: SubscriptionStore,
    mapping_id: str,
    actor_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Soft delete; the row stays for audit. Idempotent."""
    return await update_mapping(store, mapping_id, PlanMappingUpdate(active=False), actor_id=actor_id)
