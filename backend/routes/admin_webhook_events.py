"""
Admin Webhook Event Diagnostics

Operator view over inbound provider events:
- GET  /api/admin/webhook-events                      list (status/provider/email filters)
- GET  /api/admin/webhook-events/stats                counts per status + exhausted
- GET  /api/admin/webhook-events/{event_id}           full row incl. raw payload
- POST /api/admin/webhook-events/{event_id}/reprocess manual retry with a fresh attempt budget
"""
from fastapi import APIRouter, HTTPException, Depends, Query
from typing import Optional
from middleware import admin_route_guard
from models import EventStatus
from routes.dependencies import get_store, get_pipeline
from services import webhook_settings
from services.errors import EventNotReprocessableError
from services.reconciliation_pipeline import reprocess_event
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/webhook-events", tags=["admin-webhook-events"])


@router.get("")
async def list_webhook_events(
    status: Optional[EventStatus] = None,
    provider: Optional[str] = None,
    email: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    store=Depends(get_store),
    current_user: dict = Depends(admin_route_guard)
):
    """List events newest first; raw payload omitted."""
    filters = {}
    if status:
        filters["status"] = status.value
    if provider:
        filters["provider"] = provider.lower()
    if email:
        filters["email"] = email.strip().lower()

    events = await store.list_events(filters, skip=skip, limit=limit)
    return {"events": events, "skip": skip, "limit": limit}


@router.get("/stats")
async def webhook_event_stats(
    store=Depends(get_store),
    current_user: dict = Depends(admin_route_guard)
):
    by_status = await store.count_events_by_status()
    exhausted = await store.count_exhausted_events(webhook_settings.WEBHOOK_MAX_ATTEMPTS)
    return {
        "by_status": {s.value: by_status.get(s.value, 0) for s in EventStatus},
        "total": sum(by_status.values()),
        "exhausted": exhausted,
        "max_attempts": webhook_settings.WEBHOOK_MAX_ATTEMPTS,
    }


@router.get("/{event_id}")
async def get_webhook_event(
    event_id: str,
    store=Depends(get_store),
    current_user: dict = Depends(admin_route_guard)
):
    event = await store.get_event(event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    return event


@router.post("/{event_id}/reprocess")
async def reprocess_webhook_event(
    event_id: str,
    pipeline=Depends(get_pipeline),
    current_user: dict = Depends(admin_route_guard)
):
    """Reset attempts and run the pipeline now. Returns the resulting status."""
    actor = current_user.get("email") or current_user.get("sub")
    try:
        outcome = await reprocess_event(pipeline, event_id, actor_id=actor)
    except EventNotReprocessableError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if outcome is None:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    return outcome
