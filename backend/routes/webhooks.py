"""Webhook Routes - payment provider callbacks.

POST /api/webhooks/hotmart - Hotmart postback (hottok in X-Hotmart-Hottok or body)
POST /api/webhooks/doppus  - Doppus postback (X-Doppus-Signature HMAC-SHA256)

The response only acknowledges durable storage of the raw event;
reconciliation happens afterwards in the dispatcher workers. Internal
reconciliation errors are never reported back to the provider.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from routes.dependencies import get_store, get_dispatcher
from services.errors import UnknownProviderError
from services.webhook_ingestion import ingest_webhook
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/{provider}")
async def provider_webhook(
    provider: str,
    request: Request,
    store=Depends(get_store),
    dispatcher=Depends(get_dispatcher),
):
    """Receive a provider callback and persist it before any business logic runs."""
    payload = await request.body()
    source_ip = request.client.host if request.client else None
    try:
        status_code, body = await ingest_webhook(
            store,
            provider=provider.lower(),
            raw_body=payload,
            headers=request.headers,
            source_ip=source_ip,
            submit=dispatcher.submit,
        )
    except UnknownProviderError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        # Nothing was stored; a non-2xx makes the provider redeliver
        logger.exception(f"Webhook persist failed provider={provider}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Event could not be stored"
        )
    return JSONResponse(status_code=status_code, content=body)
