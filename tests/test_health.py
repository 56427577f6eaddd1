import pytest
from fastapi.testclient import TestClient

from authgate.core import health as health_module
from authgate.main import app

client = TestClient(app)


@pytest.fixture(autouse=True)
def _mock_env(monkeypatch):
    monkeypatch.setattr(health_module.settings, "environment", "test")
    yield


def _ok_checks(monkeypatch):
    async def ok():
        return {"status": "ok"}

    monkeypatch.setattr(health_module, "_check_db", ok)
    monkeypatch.setattr(health_module, "_check_redis", ok)


def test_health_live_returns_ok() -> None:
    response = client.get("/api/v1/health/live")
    assert response.status_code == 200
    payload = response.json()["data"]
    assert payload.get("status") == "ok"
    assert "timestamp" in payload


def test_health_is_public_and_not_gated() -> None:
    response = client.get("/api/v1/health/live", headers={"Accept": "text/html"}, follow_redirects=False)
    assert response.status_code == 200


def test_health_ready_ok(monkeypatch) -> None:
    _ok_checks(monkeypatch)

    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    payload = response.json()["data"]
    assert payload.get("status") == "ok"
    assert payload.get("ready") is True
    assert payload["checks"]["encryption"]["status"] == "ok"
    assert payload.get("version") == health_module.APP_VERSION


def test_health_ready_degraded(monkeypatch) -> None:
    async def bad_db():
        return {"status": "error", "error": "unreachable"}

    _ok_checks(monkeypatch)
    monkeypatch.setattr(health_module, "_check_db", bad_db)

    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    payload = response.json()["data"]
    assert payload.get("status") == "degraded"
    assert payload.get("ready") is False
    assert payload["checks"]["database"]["status"] == "error"


def test_health_degraded_on_bad_encryption_config(monkeypatch) -> None:
    _ok_checks(monkeypatch)
    monkeypatch.setattr(health_module.settings, "encryption_index_key_b64", "not-base64!")

    response = client.get("/api/v1/health")
    payload = response.json()["data"]
    assert payload["ready"] is False
    assert payload["checks"]["encryption"]["status"] == "error"


def test_responses_carry_request_id_and_security_headers() -> None:
    response = client.get("/api/v1/health/live", headers={"X-Request-ID": "req-123"})
    assert response.headers["x-request-id"] == "req-123"
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["x-frame-options"] == "DENY"
