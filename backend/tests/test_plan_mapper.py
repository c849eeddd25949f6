"""
Unit tests: product-to-plan lookup (offer first, then product-only) and admin mapping CRUD rules.
"""
import pytest

from models import PlanMappingCreate, PlanMappingUpdate
from services import plan_mapper
from services.errors import MappingNotFoundError, PlanMappingConflictError
from factories import add_mapping

pytestmark = pytest.mark.asyncio


async def test_offer_specific_mapping_wins(store):
    add_mapping(store, product_id="P1", offer_id=None, plan_code="premium_30")
    add_mapping(store, product_id="P1", offer_id="YEARLY", plan_code="premium_365", duration_days=365)
    mapping = await plan_mapper.resolve_plan(store, "hotmart", "P1", "YEARLY")
    assert mapping["plan_code"] == "premium_365"


async def test_falls_back_to_product_only_mapping(store):
    add_mapping(store, product_id="P1", offer_id=None, plan_code="premium_30")
    mapping = await plan_mapper.resolve_plan(store, "hotmart", "P1", "UNKNOWN_OFFER")
    assert mapping["plan_code"] == "premium_30"


async def test_no_mapping_raises(store):
    add_mapping(store, product_id="P1", offer_id="ONLY_THIS_OFFER")
    with pytest.raises(MappingNotFoundError) as exc_info:
        await plan_mapper.resolve_plan(store, "hotmart", "P1", None)
    assert exc_info.value.product_id == "P1"
    assert exc_info.value.retryable is True


async def test_inactive_and_other_provider_mappings_are_ignored(store):
    add_mapping(store, product_id="P1", active=False)
    add_mapping(store, provider="doppus", product_id="P1")
    with pytest.raises(MappingNotFoundError):
        await plan_mapper.resolve_plan(store, "hotmart", "P1")


async def test_create_and_audit(store):
    data = PlanMappingCreate(provider="hotmart", product_id=" P1 ", plan_code="premium_30", duration_days=30)
    mapping = await plan_mapper.create_mapping(store, data, actor_id="ops@example.com")
    assert mapping["product_id"] == "P1"
    assert mapping["provider"] == "hotmart"
    assert mapping["access_tier"] == "premium"
    assert store.mappings[mapping["mapping_id"]]["active"] is True
    assert store.audit_logs[-1]["action"] == "PLAN_MAPPING_CREATED"
    assert store.audit_logs[-1]["actor_id"] == "ops@example.com"


async def test_create_duplicate_active_mapping_conflicts(store):
    add_mapping(store, product_id="P1", offer_id="O1")
    data = PlanMappingCreate(provider="hotmart", product_id="P1", offer_id="O1", plan_code="other")
    with pytest.raises(PlanMappingConflictError):
        await plan_mapper.create_mapping(store, data)


async def test_inactive_duplicate_is_allowed(store):
    add_mapping(store, product_id="P1")
    data = PlanMappingCreate(provider="hotmart", product_id="P1", plan_code="draft", active=False)
    mapping = await plan_mapper.create_mapping(store, data)
    assert mapping["active"] is False


async def test_update_is_partial_and_lifetime_clears_duration(store):
    existing = add_mapping(store, product_id="P1", duration_days=30)
    updated = await plan_mapper.update_mapping(
        store, existing["mapping_id"], PlanMappingUpdate(lifetime=True, plan_code="lifetime")
    )
    assert updated["duration_days"] is None
    assert updated["plan_code"] == "lifetime"
    assert updated["product_id"] == "P1"
    assert store.audit_logs[-1]["action"] == "PLAN_MAPPING_UPDATED"


async def test_explicit_null_duration_without_lifetime_is_rejected(store):
    existing = add_mapping(store, product_id="P1", duration_days=30)
    with pytest.raises(ValueError, match="lifetime"):
        await plan_mapper.update_mapping(store, existing["mapping_id"], PlanMappingUpdate(duration_days=None))
    with pytest.raises(ValueError):
        await plan_mapper.update_mapping(
            store, existing["mapping_id"], PlanMappingUpdate(duration_days=None, lifetime=False)
        )
    assert store.mappings[existing["mapping_id"]]["duration_days"] == 30


async def test_reactivating_into_a_taken_key_conflicts(store):
    add_mapping(store, product_id="P1")
    inactive = add_mapping(store, product_id="P1", active=False)
    with pytest.raises(PlanMappingConflictError):
        await plan_mapper.update_mapping(store, inactive["mapping_id"], PlanMappingUpdate(active=True))


async def test_update_missing_mapping_returns_none(store):
    assert await plan_mapper.update_mapping(store, "nope", PlanMappingUpdate(plan_code="x")) is None


async def test_deactivate_is_soft(store):
    existing = add_mapping(store, product_id="P1")
    result = await plan_mapper.deactivate_mapping(store, existing["mapping_id"])
    assert result["active"] is False
    assert existing["mapping_id"] in store.mappings
    assert store.audit_logs[-1]["action"] == "PLAN_MAPPING_DEACTIVATED"
    with pytest.raises(MappingNotFoundError):
        await plan_mapper.resolve_plan(store, "hotmart", "P1")


async def test_list_filters(store):
    add_mapping(store, product_id="P1")
    add_mapping(store, product_id="P2", active=False)
    add_mapping(store, provider="doppus", product_id="D1")
    assert len(await plan_mapper.list_mappings(store, provider="hotmart")) == 2
    assert len(await plan_mapper.list_mappings(store, provider="hotmart", active=True)) == 1

