"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Webhook secrets default to empty (verification skipped); tests that need them patch webhook_settings.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("HOTMART_HOTTOK", "")
os.environ.setdefault("DOPPUS_SECRET_KEY", "")

import pytest

from fastapi.testclient import TestClient
from server import app
from auth import create_access_token
from memory_store import InMemorySubscriptionStore
from routes.dependencies import get_store, get_dispatcher, get_pipeline
from services.reconciliation_pipeline import ReconciliationPipeline
from factories import NOW


class RecordingDispatcher:
    """Stands in for the worker pool: remembers submitted event ids."""

    def __init__(self, accept=True):
        self.accept = accept
        self.submitted = []

    def submit(self, event_id):
        self.submitted.append(event_id)
        return self.accept


@pytest.fixture
def store():
    return InMemorySubscriptionStore()


@pytest.fixture
def pipeline(store):
    return ReconciliationPipeline(store, clock=lambda: NOW, attempt_timeout=5)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def client(store, dispatcher, pipeline):
    """TestClient for server:app with the store, dispatcher and pipeline swapped for in-memory ones."""
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    token = create_access_token({"sub": "admin-1", "email": "ops@example.com", "role": "ROLE_ADMIN"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers():
    token = create_access_token({"sub": "user-1", "email": "a@x.com", "role": "ROLE_USER"})
    return {"Authorization": f"Bearer {token}"}
