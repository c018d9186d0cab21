"""End-to-end tests for the live websocket endpoint."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def live_app(monkeypatch, tmp_path):
    """A running app (lifespan included) on an in-memory store."""
    monkeypatch.setenv("BUMPMAP_CONFIG", str(tmp_path / "none.yaml"))
    monkeypatch.setenv("BUMPMAP_STORAGE_BACKEND", "memory")
    monkeypatch.setenv("BUMPMAP_LOG_LEVEL", "warning")

    from bumpmap_server.main import app

    with TestClient(app) as client:
        yield client


def _connect(client, user_id):
    return client.websocket_connect(f"/ws?userId={user_id}")


def test_welcome_message(live_app):
    with live_app.websocket_connect("/ws?userId=alice") as ws:
        welcome = ws.receive_json()
        assert welcome["type"] == "connected"
        assert welcome["connectionId"]


def test_speed_bump_relayed_between_clients(live_app):
    with _connect(live_app, "alice") as a, _connect(live_app, "bob") as b:
        assert a.receive_json()["type"] == "connected"
        assert b.receive_json()["type"] == "connected"

        a.send_json({"type": "speed_bump_detected", "latitude": 40.0, "longitude": -74.0,
                     "intensity": 6, "timestamp": 1_700_000_000_000})
        ack = a.receive_json()
        assert ack["type"] == "speed_bump_detected_ack"
        assert ack["created"] is True

        relayed = b.receive_json()
        assert relayed["type"] == "speed_bump_detected"
        assert relayed["userId"] == "alice"
        assert relayed["recordId"] == ack["recordId"]

    stats = live_app.get("/api/v1/stats").json()
    assert stats["active_contributors"]["live"] == 1


def test_session_location_updates(live_app):
    with _connect(live_app, "alice") as a, _connect(live_app, "bob") as b:
        a.receive_json()
        b.receive_json()

        a.send_json({"type": "join", "sessionId": "trip-1"})
        assert a.receive_json()["type"] == "join_ack"
        b.send_json({"type": "join", "sessionId": "trip-1"})
        assert b.receive_json()["type"] == "join_ack"

        a.send_json({"type": "location_update", "latitude": 45.0, "longitude": 4.0, "speed": 9.0})
        ack = a.receive_json()
        assert ack["type"] == "location_update_ack"
        assert ack["delivered"] == 1

        update = b.receive_json()
        assert update["type"] == "location_update"
        assert update["latitude"] == 45.0
        assert update["userId"] == "alice"


def test_http_report_reaches_live_clients(live_app):
    with _connect(live_app, "watcher") as ws:
        ws.receive_json()
        resp = live_app.post("/api/v1/community/speed-bumps",
                             json={"latitude": 48.0, "longitude": 2.0, "intensity": 5},
                             headers={"x-user-id": "web"})
        assert resp.status_code == 201

        relayed = ws.receive_json()
        assert relayed["type"] == "speed_bump_detected"
        assert relayed["userId"] == "web"
        assert relayed["created"] is True


def test_malformed_frame_gets_error(live_app):
    with live_app.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_text("definitely not json")
        error = ws.receive_json()
        assert error["type"] == "error"

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"


def test_disconnect_detaches(live_app):
    with live_app.websocket_connect("/ws") as ws:
        ws.receive_json()
        assert live_app.get("/api/v1/health").json()["live_connections"] == 1

    health = live_app.get("/api/v1/health").json()
    assert health["live_connections"] == 0
