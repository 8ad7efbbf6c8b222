"""Tests for session REST endpoints."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

AUTH = {"Authorization": "Bearer test-token-123"}


@pytest.fixture
def live_client(app):
    with TestClient(app, headers=AUTH) as client:
        yield client


def attach(client, name: str) -> None:
    with client.websocket_connect("/api/ws?token=test-token-123") as ws:
        ws.receive_json()
        ws.send_json({"type": "attach-session", "data": {"sessionName": name}})
        while ws.receive_json()["type"] != "ack":
            pass


def test_list_sessions(client):
    resp = client.get("/api/sessions")
    assert resp.status_code == 200
    data = resp.json()
    assert {s["session_id"] for s in data} == {"claude-web-api-1", "claude-web-api-2"}
    assert all(not s["active_in_pool"] for s in data)


def test_list_sessions_requires_auth(unauth_client):
    resp = unauth_client.get("/api/sessions")
    assert resp.status_code == 401


def test_list_sessions_wrong_token(app):
    resp = TestClient(app, headers={"Authorization": "Bearer nope"}).get("/api/sessions")
    assert resp.status_code == 401


def test_get_untracked_session(client):
    resp = client.get("/api/sessions/claude-web-api-1")
    assert resp.status_code == 200
    data = resp.json()
    assert data["session_id"] == "claude-web-api-1"
    assert data["attached"] is True
    assert data["active_in_pool"] is False


def test_get_session_not_found(client):
    resp = client.get("/api/sessions/claude-web-nope-1")
    assert resp.status_code == 404


def test_get_active_session_and_output(live_client):
    attach(live_client, "claude-web-api-1")

    resp = live_client.get("/api/sessions/claude-web-api-1")
    assert resp.status_code == 200
    data = resp.json()
    assert data["state"] == "active"
    assert data["pid"]

    resp = live_client.get("/api/sessions/claude-web-api-1/output", params={"lines": 10})
    assert resp.status_code == 200
    assert [chunk["data"] for chunk in resp.json()] == ["$ "]


def test_output_of_unknown_session(client):
    resp = client.get("/api/sessions/claude-web-api-2/output")
    assert resp.status_code == 404


def test_restart_session(live_client, tmux_sessions):
    attach(live_client, "claude-web-api-1")
    resp = live_client.post("/api/sessions/claude-web-api-1/restart")
    assert resp.status_code == 202
    assert resp.json()["status"] == "restarted"
    assert "claude-web-api-1" not in live_client.app.state.pool
    assert "claude-web-api-1" not in {info.name for info in tmux_sessions}


def test_restart_rejects_reserved(client):
    assert client.post("/api/sessions/base-session/restart").status_code == 403
    assert client.post("/api/sessions/other-thing/restart").status_code == 400


def test_delete_untracked_session(client, tmux_sessions):
    resp = client.delete("/api/sessions/claude-web-api-2")
    assert resp.status_code == 200
    assert resp.json() == {"status": "killed", "session": "claude-web-api-2"}
    assert "claude-web-api-2" not in {info.name for info in tmux_sessions}


def test_delete_tracked_session(live_client, mock_tmux):
    attach(live_client, "claude-web-api-1")
    resp = live_client.delete("/api/sessions/claude-web-api-1")
    assert resp.status_code == 200
    assert "claude-web-api-1" not in live_client.app.state.pool
    mock_tmux.kill_session.assert_awaited_with("claude-web-api-1")


def test_delete_failure_maps_to_502(client, mock_tmux):
    mock_tmux.kill_session.side_effect = None
    mock_tmux.kill_session.return_value = False
    resp = client.delete("/api/sessions/claude-web-api-2")
    assert resp.status_code == 502


def test_delete_base_session_forbidden(client, mock_tmux):
    resp = client.delete("/api/sessions/base-session")
    assert resp.status_code == 403
    mock_tmux.kill_session.assert_not_awaited()
