"""Tests for the health endpoint and request id middleware (main.py)"""


def test_health(unauthenticated_client):
    client, _ = unauthenticated_client
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_request_id_is_echoed(unauthenticated_client):
    client, _ = unauthenticated_client
    response = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert response.headers["X-Request-ID"] == "abc123"


def test_request_id_is_generated(unauthenticated_client):
    client, _ = unauthenticated_client
    response = client.get("/health")
    assert len(response.headers["X-Request-ID"]) == 8
