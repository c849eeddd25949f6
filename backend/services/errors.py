"""Error taxonomy for webhook ingestion and subscription reconciliation.

`retryable` tells the pipeline whether the retry sweep may pick the event up
again; `counts_attempt` tells it whether the failure consumes one of the
event's attempts (infrastructure outages do not).
"""


class ReconciliationError(Exception):
    """Base exception for the ingestion/reconciliation subsystem."""
    retryable = True
    counts_attempt = True


class AuthenticationError(ReconciliationError):
    """Provider signature/token missing or invalid. Rejected before any write."""
    retryable = False


class MalformedPayloadError(ReconciliationError):
    """Payload lacks an identifier required to reconcile it. Permanent."""
    retryable = False


class MappingNotFoundError(ReconciliationError):
    """No active plan mapping for the product/offer. Retried until an admin adds one."""

    def __init__(self, provider: str, product_id: str, offer_id: str = None):
        self.provider = provider
        self.product_id = product_id
        self.offer_id = offer_id
        offer = f" offer={offer_id}" if offer_id else ""
        super().__init__(
            f"No active plan mapping for provider={provider} product={product_id}{offer}"
        )


class TransientStorageError(ReconciliationError):
    """Database unavailable or transaction aborted by the server; safe to retry."""
    counts_attempt = False


class AccountConflictError(ReconciliationError):
    """Unique-email race while creating an account. Recovered by re-reading."""


class UnknownProviderError(ReconciliationError):
    """Callback addressed to a provider that is not registered."""
    retryable = False


class PlanMappingConflictError(ReconciliationError):
    """An active mapping already exists for (provider, product_id, offer_id)."""
    retryable = False


class EventNotReprocessableError(ReconciliationError):
    """Manual reprocess requested for an event that is processed or actively being processed."""
    retryable = False
