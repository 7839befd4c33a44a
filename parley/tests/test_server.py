"""Tests for the webhook server endpoints (FastAPI TestClient, lifespan not started)."""

import hashlib
import hmac
import json

import pytest
from unittest.mock import Mock
from fastapi.testclient import TestClient

from parley.common.errors import EmbeddingError
from parley.common.schemas import KnowledgeChunk
from parley.common.tenants import Tenant, TenantRegistry
from parley.orchestrator import server
from parley.orchestrator.handlers import InstagramHandler


def sign(body: bytes, secret: str = "secret") -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def orchestrator():
    orch = Mock()
    orch.get_stats.return_value = {"events": {"replied": 3}, "pending_shares": 0, "tenants": 1}
    return orch


@pytest.fixture
def indexer():
    return Mock()


@pytest.fixture
def client(monkeypatch, orchestrator, indexer):
    monkeypatch.setattr(server, "instagram_handler", InstagramHandler(verify_token="vt", app_secret="secret"))
    monkeypatch.setattr(server, "orchestrator", orchestrator)
    monkeypatch.setattr(server, "indexer", indexer)
    monkeypatch.setattr(server, "tenants", TenantRegistry([Tenant("t1", "p1", "prompt")]))
    return TestClient(server.app)


class TestVerificationHandshake:
    def test_challenge_echoed(self, client):
        response = client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "vt", "hub.challenge": "1158201444"},
        )
        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_wrong_token_rejected(self, client):
        response = client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"},
        )
        assert response.status_code == 403


class TestDelivery:
    def test_signed_delivery_acknowledged_and_submitted(self, client, orchestrator):
        body = json.dumps({"object": "instagram", "entry": []}).encode()

        response = client.post("/webhook", content=body, headers={"X-Hub-Signature-256": sign(body)})

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        orchestrator.submit.assert_called_once_with(body)

    def test_bad_signature_rejected(self, client, orchestrator):
        response = client.post("/webhook", content=b"{}", headers={"X-Hub-Signature-256": "sha256=00"})

        assert response.status_code == 401
        orchestrator.submit.assert_not_called()

    def test_garbage_body_still_acknowledged(self, client, orchestrator):
        body = b"not json at all"
        response = client.post("/webhook", content=body, headers={"X-Hub-Signature-256": sign(body)})
        assert response.json() == {"ok": True}

    def test_uninitialized_returns_503(self, client, monkeypatch):
        monkeypatch.setattr(server, "orchestrator", None)
        response = client.post("/webhook", content=b"{}")
        assert response.status_code == 503


class TestStatus:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["initialized"] is True
        assert body["tenants"] == 1

    def test_stats(self, client):
        body = client.get("/stats").json()
        assert body["service"] == "parley"
        assert body["orchestrator"]["events"]["replied"] == 3


class TestKnowledgeSync:
    def test_sync_source(self, client, indexer):
        indexer.sync_source.return_value = KnowledgeChunk(
            tenant_id="t1", text="Red sneakers", source_id="sku-1", metadata={"version": 2},
        )

        response = client.put("/knowledge/t1/sources/sku-1", json={"text": "Red sneakers", "metadata": {"doctype": "catalog"}})

        assert response.status_code == 200
        assert response.json()["version"] == 2
        indexer.sync_source.assert_called_once_with("t1", "sku-1", "Red sneakers", {"doctype": "catalog"})

    def test_unknown_tenant(self, client):
        response = client.put("/knowledge/nope/sources/sku-1", json={"text": "x"})
        assert response.status_code == 404

    def test_empty_text(self, client, indexer):
        indexer.sync_source.side_effect = ValueError("Cannot sync empty knowledge text")
        response = client.put("/knowledge/t1/sources/sku-1", json={"text": " "})
        assert response.status_code == 400

    def test_embedding_failure(self, client, indexer):
        indexer.sync_source.side_effect = EmbeddingError("500")
        response = client.put("/knowledge/t1/sources/sku-1", json={"text": "x"})
        assert response.status_code == 502

    def test_retire_source(self, client, indexer):
        indexer.retire_source.return_value = 2
        response = client.delete("/knowledge/t1/sources/sku-1")
        assert response.json() == {"status": "deleted", "source_id": "sku-1", "removed": 2}

    def test_retire_missing_source(self, client, indexer):
        indexer.retire_source.return_value = 0
        assert client.delete("/knowledge/t1/sources/sku-1").status_code == 404
