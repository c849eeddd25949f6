"""Provider payload decoders.

Provider JSON is stored untouched on the InboundEvent; everything the pipeline
needs is extracted here, once, into a typed DecodedEvent. Missing identifiers
raise MalformedPayloadError instead of surfacing later as KeyErrors.

Registered providers:
- hotmart  event name at top level, buyer/product/purchase under `data`
- doppus   legacy {event, data} shape or the flat {customer, items} shape
"""
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable, Mapping
import logging

from models import EventKind
from services import webhook_settings
from services.errors import MalformedPayloadError, UnknownProviderError
from services.webhook_auth import verify_hotmart_hottok, verify_doppus_signature

logger = logging.getLogger(__name__)

GRANTING_KINDS = {EventKind.PURCHASE.value, EventKind.RENEWAL.value}


@dataclass(frozen=True)
class DecodedEvent:
    provider: str
    transaction_id: str
    email: str
    kind: str
    event_type: str
    buyer_name: Optional[str] = None
    product_id: Optional[str] = None
    offer_id: Optional[str] = None
    recurrence: Optional[int] = None

    @property
    def idempotency_key(self) -> str:
        return build_idempotency_key(self.provider, self.event_type, self.transaction_id)

    @property
    def grants_access(self) -> bool:
        return self.kind in GRANTING_KINDS


def build_idempotency_key(provider: str, event_type: str, transaction_id: str) -> str:
    return f"{provider}:{event_type}:{transaction_id}"


def dig(payload: Any, path: str) -> Any:
    """Walk a dotted path through nested dicts/lists ("data.items.0.code"); None when absent."""
    current = payload
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def first_present(payload: Any, *paths: str) -> Optional[str]:
    """First non-blank value among the paths, as a stripped string."""
    for path in paths:
        value = dig(payload, path)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def normalize_event_name(name: Optional[str]) -> str:
    return (name or "").strip().upper().replace(".", "_")


def _parse_recurrence(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _kind_from_recurrence(recurrence: Optional[int]) -> str:
    if recurrence is not None and recurrence > 1:
        return EventKind.RENEWAL.value
    return EventKind.PURCHASE.value


class ProviderDecoder:
    """Turns one provider's payload into a DecodedEvent and authenticates its callbacks."""

    name: str = ""
    event_kinds: Dict[str, str] = {}
    recurrence_events: set = set()

    def verify(self, headers: Mapping[str, str], raw_body: bytes, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def event_type(self, payload: Dict[str, Any]) -> str:
        raise NotImplementedError

    def extract(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def classify(self, event_type: str, recurrence: Optional[int]) -> str:
        if event_type in self.recurrence_events:
            return _kind_from_recurrence(recurrence)
        return self.event_kinds.get(event_type, EventKind.IGNORED.value)

    def decode(self, payload: Dict[str, Any]) -> DecodedEvent:
        if not isinstance(payload, dict):
            raise MalformedPayloadError(f"{self.name} payload must be a JSON object")

        event_type = self.event_type(payload)
        if not event_type:
            raise MalformedPayloadError(f"{self.name} payload has no event name")

        fields = self.extract(payload)
        transaction_id = fields.get("transaction_id")
        email = (fields.get("email") or "").strip().lower()
        if not transaction_id:
            raise MalformedPayloadError(f"{self.name} {event_type}: missing transaction id")
        if not email or "@" not in email:
            raise MalformedPayloadError(f"{self.name} {event_type}: missing or invalid buyer email")

        recurrence = _parse_recurrence(fields.get("recurrence"))
        kind = self.classify(event_type, recurrence)
        if kind in GRANTING_KINDS and not fields.get("product_id"):
            raise MalformedPayloadError(f"{self.name} {event_type}: missing product id")

        return DecodedEvent(
            provider=self.name,
            transaction_id=transaction_id,
            email=email,
            kind=kind,
            event_type=event_type,
            buyer_name=fields.get("buyer_name"),
            product_id=fields.get("product_id"),
            offer_id=fields.get("offer_id"),
            recurrence=recurrence,
        )


class HotmartDecoder(ProviderDecoder):
    name = "hotmart"
    recurrence_events = {"PURCHASE_APPROVED", "PURCHASE_COMPLETE"}
    event_kinds = {
        "SUBSCRIPTION_REACTIVATION": EventKind.RENEWAL.value,
        "SUBSCRIPTION_CANCELLATION": EventKind.CANCELLATION.value,
        "PURCHASE_CANCELED": EventKind.CANCELLATION.value,
        "PURCHASE_REFUNDED": EventKind.REFUND.value,
        "PURCHASE_CHARGEBACK": EventKind.REFUND.value,
    }

    def __init__(self, hottok: Optional[str] = None):
        self.hottok = hottok

    def verify(self, headers, raw_body, payload):
        token = headers.get("x-hotmart-hottok")
        if not token and isinstance(payload, dict):
            token = payload.get("hottok")
        verify_hotmart_hottok(token, secret=self.hottok)

    def event_type(self, payload):
        return normalize_event_name(payload.get("event"))

    def extract(self, payload):
        return {
            # v2 subscription events carry no purchase block; the subscription id identifies them
            "transaction_id": first_present(
                payload,
                "data.purchase.transaction",
                "data.subscription.id",
                "data.subscription.code",
                "purchase.transaction",
                "data.data.subscription.id",
            ),
            "email": first_present(
                payload,
                "data.buyer.email",
                "data.subscriber.email",
                "data.data.subscriber.email",
                "buyer.email",
                "subscriber.email",
            ),
            "buyer_name": first_present(
                payload, "data.buyer.name", "data.subscriber.name", "data.data.subscriber.name"
            ),
            "product_id": first_present(payload, "data.product.id"),
            "offer_id": first_present(payload, "data.purchase.offer.code"),
            "recurrence": dig(payload, "data.purchase.recurrence_number"),
        }


class DoppusDecoder(ProviderDecoder):
    name = "doppus"
    recurrence_events = {"PAYMENT_APPROVED"}
    event_kinds = {
        "SUBSCRIPTION_RENEWED": EventKind.RENEWAL.value,
        "SUBSCRIPTION_CANCELLED": EventKind.CANCELLATION.value,
        "SUBSCRIPTION_CANCELED": EventKind.CANCELLATION.value,
        "SUBSCRIPTION_EXPIRED": EventKind.EXPIRATION.value,
        "PAYMENT_REFUNDED": EventKind.REFUND.value,
        "PAYMENT_CHARGEBACK": EventKind.REFUND.value,
    }

    def __init__(self, secret_key: Optional[str] = None):
        self.secret_key = secret_key

    def verify(self, headers, raw_body, payload):
        verify_doppus_signature(raw_body, headers.get("x-doppus-signature"), secret=self.secret_key)

    @staticmethod
    def _is_flat(payload) -> bool:
        return "event" not in payload and ("customer" in payload or "items" in payload)

    def _body(self, payload) -> Dict[str, Any]:
        # Flat payloads carry the data fields at the top level
        if self._is_flat(payload):
            return {"data": payload, "id": payload.get("id")}
        return payload

    def event_type(self, payload):
        if self._is_flat(payload):
            return "PAYMENT_APPROVED"
        return normalize_event_name(payload.get("event"))

    def extract(self, payload):
        body = self._body(payload)
        return {
            "transaction_id": first_present(body, "data.transaction.code", "data.code", "id"),
            "email": first_present(body, "data.customer.email"),
            "buyer_name": first_present(body, "data.customer.name"),
            "product_id": first_present(body, "data.product.code", "data.items.0.code"),
            "offer_id": first_present(body, "data.offer.code", "data.items.0.offer"),
            "recurrence": dig(body, "data.recurrence.number"),
        }


DecoderFactory = Callable[[], ProviderDecoder]

_DECODERS: Dict[str, DecoderFactory] = {}


def register_decoder(name: str, factory: DecoderFactory) -> None:
    _DECODERS[name] = factory


def get_decoder(provider: str) -> ProviderDecoder:
    factory = _DECODERS.get((provider or "").lower())
    if factory is None:
        raise UnknownProviderError(f"Unknown payment provider: {provider}")
    return factory()


def registered_providers():
    return sorted(_DECODERS.keys())


def _hotmart_factory() -> ProviderDecoder:
    return HotmartDecoder(hottok=webhook_settings.HOTMART_HOTTOK)


def _doppus_factory() -> ProviderDecoder:
    return DoppusDecoder(secret_key=webhook_settings.DOPPUS_SECRET_KEY)


register_decoder("hotmart", _hotmart_factory)
register_decoder("doppus", _doppus_factory)
