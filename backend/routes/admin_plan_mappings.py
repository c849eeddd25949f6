"""
Admin Plan Mapping Routes

Server side of the product mapping screens:
- List/get mappings (filter by provider, active)
- Create (409 when an active mapping already covers the product/offer)
- Partial update
- Soft delete (active=false); rows are kept for audit
"""
from fastapi import APIRouter, HTTPException, Depends, Query
from typing import Optional
from middleware import admin_route_guard
from models import PlanMappingCreate, PlanMappingUpdate, SubscriptionOrigin
from routes.dependencies import get_store
from services import plan_mapper
from services.errors import PlanMappingConflictError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/plan-mappings", tags=["admin-plan-mappings"])


def _actor(current_user: dict) -> Optional[str]:
    return current_user.get("email") or current_user.get("sub")


@router.get("")
async def list_plan_mappings(
    provider: Optional[SubscriptionOrigin] = None,
    active: Optional[bool] = Query(None),
    store=Depends(get_store),
    current_user: dict = Depends(admin_route_guard)
):
    """List plan mappings."""
    mappings = await plan_mapper.list_mappings(
        store,
        provider=provider.value if provider else None,
        active=active,
    )
    return {"mappings": mappings, "total": len(mappings)}


@router.get("/{mapping_id}")
async def get_plan_mapping(
    mapping_id: str,
    store=Depends(get_store),
    current_user: dict = Depends(admin_route_guard)
):
    mapping = await plan_mapper.get_mapping(store, mapping_id)
    if not mapping:
        raise HTTPException(status_code=404, detail="Plan mapping not found")
    return mapping


@router.post("", status_code=201)
async def create_plan_mapping(
    request: PlanMappingCreate,
    store=Depends(get_store),
    current_user: dict = Depends(admin_route_guard)
):
    """Create a mapping. duration_days null means lifetime access."""
    try:
        mapping = await plan_mapper.create_mapping(store, request, actor_id=_actor(current_user))
    except PlanMappingConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "mapping_id": mapping["mapping_id"], "mapping": mapping}


@router.put("/{mapping_id}")
async def update_plan_mapping(
    mapping_id: str,
    request: PlanMappingUpdate,
    store=Depends(get_store),
    current_user: dict = Depends(admin_route_guard)
):
    try:
        mapping = await plan_mapper.update_mapping(store, mapping_id, request, actor_id=_actor(current_user))
    except PlanMappingConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if mapping is None:
        raise HTTPException(status_code=404, detail="Plan mapping not found")
    return {"success": True, "mapping": mapping}


@router.delete("/{mapping_id}")
async def deactivate_plan_mapping(
    mapping_id: str,
    store=Depends(get_store),
    current_user: dict = Depends(admin_route_guard)
):
    """Soft delete."""
    mapping = await plan_mapper.deactivate_mapping(store, mapping_id, actor_id=_actor(current_user))
    if mapping is None:
        raise HTTPException(status_code=404, detail="Plan mapping not found")
    logger.info(f"Plan mapping {mapping_id} deactivated by {_actor(current_user)}")
    return {"success": True, "mapping": mapping}
