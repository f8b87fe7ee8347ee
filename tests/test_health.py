"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and database fields
  - No authentication required
  - 503 with the standard error envelope when the store is unreachable
"""

from __future__ import annotations

from unittest.mock import patch

from core.errors import Unavailable


def test_health_returns_200(api_client):
    client, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["database"] == "ok"
    assert "version" in data


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _ = api_client
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_health_reports_unavailable_store(api_client):
    client, services = api_client
    with patch.object(services.store, "ping", side_effect=Unavailable()):
        resp = client.get("/api/v1/health")
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "unavailable"
