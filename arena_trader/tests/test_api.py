"""
HTTP service tests. Cadence loops are disabled; cycles run via the trigger endpoint.
"""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from arena_trader.api import app


@pytest.fixture
def client(config):
    config.scheduler_enabled = False
    with patch("arena_trader.api.load_config", return_value=config):
        with TestClient(app) as test_client:
            yield test_client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["scheduler_running"] is False


def test_traders(client):
    traders = client.get("/api/traders").json()
    assert [t["id"] for t in traders] == ["alpha", "beta"]
    assert traders[0]["cash_balance"] == 500.0
    assert traders[0]["win_rate"] == 0.0
    assert traders[0]["open_positions"] == 0


def test_trigger_cycle_and_wait(client):
    response = client.post("/api/trigger-cycle", params={"wait": "true"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert [r["agent_id"] for r in body["results"]] == ["alpha", "beta"]

    trades = client.get("/api/trades").json()
    assert len(trades) == 2
    assert all(t["action"] == "HOLD" for t in trades)

    market = client.get("/api/market").json()
    assert len(market) == 3


def test_trigger_single_agent(client):
    body = client.post("/api/trigger-cycle", params={"agent_id": "beta", "wait": "true"}).json()
    assert [r["agent_id"] for r in body["results"]] == ["beta"]
    assert client.get("/api/trades", params={"agent_id": "alpha"}).json() == []


def test_trigger_unknown_agent(client):
    response = client.post("/api/trigger-cycle", params={"agent_id": "ghost"})
    assert response.status_code == 404


def test_snapshots(client):
    assert client.get("/api/snapshots/alpha").json() == []
    assert client.get("/api/snapshots/ghost").status_code == 404


def test_positions_empty(client):
    assert client.get("/api/positions").json() == []


def test_trades_limit_validated(client):
    assert client.get("/api/trades", params={"limit": 0}).status_code == 422
