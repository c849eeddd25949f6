"""Webhook ingestion - the boundary between provider callbacks and the pipeline.

Order of operations:
1. Parse JSON (400 on garbage, nothing stored)
2. Authenticate (401, nothing stored)
3. Decode; malformed payloads are stored as permanent errors and acknowledged
   with 200 so the provider stops redelivering
4. Idempotent insert keyed by provider/event type/transaction id
5. Hand the event id to the dispatcher and return; reconciliation never runs
   inside the request
"""
import json
import logging
from typing import Optional, Dict, Any, Tuple, Callable, Mapping

from services import event_store
from services.errors import AuthenticationError, MalformedPayloadError
from services.payload_decoders import get_decoder
from services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

SubmitFn = Callable[[str], bool]


def parse_json_body(raw_body: bytes) -> Optional[Any]:
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None


async def ingest_webhook(
    store: SubscriptionStore,
    provider: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    source_ip: Optional[str] = None,
    submit: Optional[SubmitFn] = None,
) -> Tuple[int, Dict[str, Any]]:
    """Returns (http_status, response_body).

    Raises UnknownProviderError for an unregistered provider. Storage failures
    propagate so the caller can answer 500 and the provider redelivers.
    """
    decoder = get_decoder(provider)
    headers = {k.lower(): v for k, v in headers.items()}

    payload = parse_json_body(raw_body)
    if payload is None:
        logger.warning(f"WEBHOOK_REJECTED provider={provider} reason=invalid_json source_ip={source_ip}")
        return 400, {"status": "invalid", "detail": "Request body is not valid JSON"}

    try:
        decoder.verify(headers, raw_body, payload)
    except AuthenticationError as e:
        logger.warning(f"WEBHOOK_REJECTED provider={provider} reason=authentication error={e} source_ip={source_ip}")
        return 401, {"status": "unauthorized", "detail": str(e)}

    # Shared secret must not end up in the stored payload
    if isinstance(payload, dict):
        payload.pop("hottok", None)

    try:
        decoded = decoder.decode(payload)
    except MalformedPayloadError as e:
        _, stored = await event_store.record_malformed_event(store, provider, payload, e, source_ip=source_ip)
        logger.warning(
            f"WEBHOOK_REJECTED provider={provider} reason=malformed event_id={stored.get('event_id')} error={e}"
        )
        return 200, {"status": "rejected", "event_id": stored.get("event_id"), "detail": str(e)}

    created, stored = await event_store.record_event(store, decoded, payload, source_ip=source_ip)
    event_id = stored["event_id"]

    if not created:
        logger.info(
            f"WEBHOOK_DUPLICATE provider={provider} event_id={event_id} "
            f"idempotency_key={decoded.idempotency_key} status={stored.get('status')}"
        )
        return 200, {"status": "duplicate", "event_id": event_id, "event_status": stored.get("status")}

    logger.info(
        f"WEBHOOK_RECEIVED provider={provider} event_id={event_id} event_type={decoded.event_type} "
        f"kind={decoded.kind} transaction_id={decoded.transaction_id} email={decoded.email}"
    )
    queued = submit(event_id) if submit else False
    return 200, {"status": "received", "event_id": event_id, "queued": queued}
