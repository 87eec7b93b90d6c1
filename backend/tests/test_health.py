from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from policydiff.api.routers.system import reset_ready_cache
from policydiff.config import settings
from policydiff.main import app


@pytest.fixture(autouse=True)
def isolated_storage(tmp_path: Path):
    original = (settings.database_url, settings.storage_root, settings.storage_backend)
    settings.database_url = f"sqlite:///{tmp_path}/health.db"
    settings.storage_root = str(tmp_path / "uploads")
    reset_ready_cache()
    yield
    settings.database_url, settings.storage_root, settings.storage_backend = original
    reset_ready_cache()


def test_root_endpoint() -> None:
    with TestClient(app) as client:
        response = client.get("/")
    assert response.json() == {"service": "policydiff-backend", "status": "running"}


def test_health_endpoint() -> None:
    with TestClient(app) as client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


def test_ready_endpoint_probes_db_and_local_storage() -> None:
    with TestClient(app) as client:
        response = client.get("/ready")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["checks"]["db"] == {"ok": True, "backend": "sqlite"}
    assert payload["checks"]["storage"] == {"ok": True, "backend": "local"}
    assert not (Path(settings.storage_root) / ".ready_probe").exists()


def test_ready_endpoint_reports_unsupported_storage_backend() -> None:
    with TestClient(app) as client:
        settings.storage_backend = "ftp"
        response = client.get("/ready")
    assert response.status_code == 503
    payload = response.json()
    assert payload["status"] == "not_ready"
    assert payload["checks"]["storage"]["ok"] is False
    assert "Unsupported STORAGE_BACKEND" in payload["checks"]["storage"]["error"]


def test_ready_result_is_cached() -> None:
    with TestClient(app) as client:
        first = client.get("/ready")
        settings.storage_backend = "ftp"
        second = client.get("/ready")
    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == first.json()
