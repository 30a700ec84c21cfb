"""
Tests for the application shell: root descriptor, health check, fallbacks
"""

import os
import time

from fastapi.testclient import TestClient

from backend.main import AVAILABLE_ENDPOINTS, SERVICE_NAME, SERVICE_VERSION, app


def test_root_endpoint(client):
    response = client.get("/")

    assert response.status_code == 200
    data = response.json()
    assert data["name"] == SERVICE_NAME
    assert data["version"] == SERVICE_VERSION
    assert data["status"] == "running"
    assert data["endpoints"]["convert"].startswith("/api/convert")


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_unknown_endpoint(client):
    response = client.get("/api/unknown")

    assert response.status_code == 404
    assert response.json() == {"error": "Endpoint not found", "available": AVAILABLE_ENDPOINTS}


def test_cors_headers(client):
    response = client.get("/health", headers={"Origin": "https://example.com"})

    assert response.headers["access-control-allow-origin"] == "*"


def test_startup_sweeps_expired_artifacts(store, extractor):
    stale = store.base_dir / "ytmp3_dQw4w9WgXcQ_1.mp3"
    stale.write_bytes(b"old")
    past = time.time() - 3 * 3600
    os.utime(stale, (past, past))

    with TestClient(app):
        assert not stale.exists()
