"""
HTTP tests for POST /api/webhooks/{provider} and the health endpoint.
"""
import json

from services import webhook_settings
from services.errors import TransientStorageError
from services.webhook_auth import compute_signature
from factories import hotmart_payload, doppus_payload


def test_hotmart_callback_is_acknowledged_after_storage(client, store, dispatcher):
    response = client.post("/api/webhooks/hotmart", json=hotmart_payload())
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "received"
    assert body["queued"] is True
    assert store.events[body["event_id"]]["status"] == "received"
    assert dispatcher.submitted == [body["event_id"]]


def test_provider_segment_is_case_insensitive(client, store):
    response = client.post("/api/webhooks/Hotmart", json=hotmart_payload())
    assert response.status_code == 200
    assert len(store.events) == 1


def test_redelivery_is_acknowledged_as_duplicate(client, store):
    first = client.post("/api/webhooks/hotmart", json=hotmart_payload()).json()
    second = client.post("/api/webhooks/hotmart", json=hotmart_payload())
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"
    assert second.json()["event_id"] == first["event_id"]
    assert len(store.events) == 1


def test_unknown_provider_is_404(client, store):
    response = client.post("/api/webhooks/paypal", json={"event": "X"})
    assert response.status_code == 404
    assert store.events == {}


def test_unparseable_body_is_400(client, store):
    response = client.post(
        "/api/webhooks/hotmart", content=b"not-json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert store.events == {}


def test_wrong_hottok_is_401(client, store, monkeypatch):
    monkeypatch.setattr(webhook_settings, "HOTMART_HOTTOK", "expected")
    response = client.post(
        "/api/webhooks/hotmart", json=hotmart_payload(), headers={"X-Hotmart-Hottok": "forged"}
    )
    assert response.status_code == 401
    assert store.events == {}


def test_doppus_signature_header_is_verified(client, store, monkeypatch):
    monkeypatch.setattr(webhook_settings, "DOPPUS_SECRET_KEY", "k")
    raw = json.dumps(doppus_payload()).encode()

    ok = client.post(
        "/api/webhooks/doppus", content=raw,
        headers={"Content-Type": "application/json", "X-Doppus-Signature": compute_signature(raw, "k")},
    )
    forged = client.post(
        "/api/webhooks/doppus", content=raw,
        headers={"Content-Type": "application/json", "X-Doppus-Signature": "00" * 32},
    )

    assert ok.status_code == 200
    assert forged.status_code == 401
    assert len(store.events) == 1


def test_storage_outage_is_500_so_the_provider_redelivers(client, store, dispatcher):
    store.fail_on("insert_event_if_absent", TransientStorageError("no primary"))
    response = client.post("/api/webhooks/hotmart", json=hotmart_payload())
    assert response.status_code == 500
    assert dispatcher.submitted == []


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["providers"] == ["doppus", "hotmart"]
