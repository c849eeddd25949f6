"""Request-scoped accessors for the store and the reconciliation runtime.

Routes take these through Depends() so tests can swap them with
app.dependency_overrides.
"""
from fastapi import Request, HTTPException, status
from database import database
from services.subscription_store import SubscriptionStore


def get_store() -> SubscriptionStore:
    return database.get_store()


def get_dispatcher(request: Request):
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Dispatcher not running")
    return dispatcher


def get_pipeline(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not initialised")
    return pipeline
