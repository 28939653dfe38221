from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from plot_allocation.api import router as router_module
from plot_allocation.api.app import create_app
from plot_allocation.config import Settings
from plot_allocation.db.memory import InMemoryDBManager


@pytest.fixture
def app_client(tmp_path, monkeypatch):
    settings = Settings(mongo_uri="", ledger_log_path=tmp_path / "ledger.log")
    monkeypatch.setattr(
        router_module, "_services", router_module.build_services(settings, db=InMemoryDBManager())
    )
    with TestClient(create_app()) as c:
        yield c


def test_health(app_client):
    resp = app_client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    # Correlation ids are only issued under the plots prefix
    assert "X-Correlation-ID" not in resp.headers


def test_app_serves_plot_routes(app_client, tmp_path):
    resp = app_client.post(
        "/plots/purchase",
        json={"user_id": "user-1", "position": {"x": 30, "z": 0}, "size": {"width": 1, "depth": 1}},
        headers={"X-Correlation-ID": "corr-app"},
    )

    assert resp.status_code == 201
    assert resp.headers["X-Correlation-ID"] == "corr-app"
    assert "corr-app" in (tmp_path / "ledger.log").read_text()
