"""Tests for the WebSocket endpoint and intent handling."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

TOKEN = "test-token-123"


@pytest.fixture
def live_client(app):
    """Client with the app lifespan running, so every socket shares one loop."""
    with TestClient(app) as client:
        yield client


def receive_until(ws, event_type: str, limit: int = 50) -> list[dict]:
    """Read events up to and including the first one of ``event_type``."""
    events = []
    for _ in range(limit):
        event = ws.receive_json()
        events.append(event)
        if event["type"] == event_type:
            return events
    raise AssertionError(f"no {event_type} event in {[e['type'] for e in events]}")


def connect(client):
    ws = client.websocket_connect(f"/api/ws?token={TOKEN}")
    return ws


def test_rejects_bad_token(live_client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with live_client.websocket_connect("/api/ws?token=wrong"):
            pass
    assert excinfo.value.code == 4001


def test_connected_then_ping(live_client):
    with connect(live_client) as ws:
        hello = ws.receive_json()
        assert hello["type"] == "connected"
        assert hello["data"]["connectionId"]

        ws.send_json({"type": "ping", "id": "p1"})
        pong = ws.receive_json()
        assert pong["type"] == "pong"
        assert pong["data"] == {"id": "p1"}

        ws.send_text("ping")
        assert ws.receive_json()["type"] == "pong"


def test_malformed_messages(live_client):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_text("{not json")
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["data"]["code"] == "invalid_intent"

        ws.send_json({"type": "launch-missiles"})
        assert ws.receive_json()["data"]["code"] == "invalid_intent"

        ws.send_json({"type": "write", "data": {"sessionId": "claude-web-api-1"}})
        error = ws.receive_json()
        assert error["data"]["code"] == "invalid_intent"
        assert error["data"]["intent"] == "write"


def test_create_session_by_logical_name(live_client, mock_tmux, config):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "create-session", "id": "c1", "data": {"logicalName": "api", "cols": 100, "rows": 30}})
        events = receive_until(ws, "ack")

    types = [e["type"] for e in events]
    assert types.index("room-status") < types.index("session-created") < types.index("ack")
    created = next(e for e in events if e["type"] == "session-created")
    assert created["data"]["sessionName"] == "claude-web-api-3"
    assert created["data"]["sequenceNumber"] == 3
    ack = events[-1]
    assert ack["data"]["id"] == "c1"
    assert ack["data"]["result"]["sessionName"] == "claude-web-api-3"
    mock_tmux.create_session.assert_awaited_once_with(
        "claude-web-api-3", working_dir=str((config.projects_root / "api").resolve()), cols=100, rows=30,
    )


def test_create_session_is_announced_to_everyone(live_client):
    with connect(live_client) as a, connect(live_client) as b:
        a.receive_json()
        b.receive_json()
        a.send_json({"type": "create-session", "data": {"logicalName": "web"}})
        receive_until(a, "ack")
        created = receive_until(b, "session-created")[-1]
        assert created["data"]["sessionName"] == "claude-web-web-1"


def test_create_existing_session_fails(live_client):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "create-session", "data": {"sessionName": "claude-web-api-1"}})
        error = receive_until(ws, "error")[-1]
        assert "already exists" in error["data"]["message"]


def test_create_requires_a_name(live_client):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "create-session", "data": {}})
        error = receive_until(ws, "error")[-1]
        assert error["data"]["code"] == "invalid_session_name"


@pytest.mark.parametrize(
    ("name", "code"),
    [("base-session", "reserved_session"), ("my-session", "invalid_session_name")],
)
def test_delete_rejects_protected_names(live_client, mock_tmux, name, code):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "delete-session", "data": {"sessionName": name}})
        error = receive_until(ws, "error")[-1]
        assert error["data"]["code"] == code
    mock_tmux.kill_session.assert_not_awaited()


def test_delete_session(live_client, tmux_sessions):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "delete-session", "data": {"sessionName": "claude-web-api-2"}})
        events = receive_until(ws, "ack")
    deleted = next(e for e in events if e["type"] == "session-deleted")
    assert deleted["data"] == {"sessionName": "claude-web-api-2", "success": True}
    assert "claude-web-api-2" not in {info.name for info in tmux_sessions}


def test_delete_missing_session_still_broadcasts(live_client):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "delete-session", "data": {"sessionName": "claude-web-gone-1"}})
        events = receive_until(ws, "ack")
    assert any(e["type"] == "session-deleted" for e in events)


def test_attach_existing_session_replays_screen(live_client, attacher):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "attach-session", "data": {"sessionName": "claude-web-api-1"}})
        events = receive_until(ws, "ack")
        attached = next(e for e in events if e["type"] == "session-attached")
        assert attached["data"]["reconnect"] is True

        frames = [e["data"]["data"] for e in events if e["type"] == "terminal-output" and e["data"].get("replay")]
        while len(frames) < 3:
            event = ws.receive_json()
            if event["type"] == "terminal-output" and event["data"].get("replay"):
                frames.append(event["data"]["data"])
        assert frames == ["\x1b[2J\x1b[H", "$ ls\r\nfile1\r\n$ ", "\x1b[3;3H"]
    assert len(attacher.spawned) == 1


def test_attach_reserved_session_is_rejected(live_client, attacher):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "attach-session", "data": {"sessionName": "base-session"}})
        assert receive_until(ws, "error")[-1]["data"]["code"] == "reserved_session"
    assert attacher.spawned == []


def test_write_and_resize(live_client, attacher):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "attach-session", "data": {"sessionName": "claude-web-api-1"}})
        receive_until(ws, "ack")

        ws.send_json({"type": "write", "data": {"sessionId": "claude-web-api-1", "data": "ls\r"}})
        ack = receive_until(ws, "ack")[-1]
        assert ack["data"]["result"]["bytes"] == 3

        ws.send_json({"type": "resize", "data": {"sessionId": "claude-web-api-1", "cols": 132, "rows": 50}})
        ack = receive_until(ws, "ack")[-1]
        assert ack["data"]["result"]["cols"] == 132
    assert attacher.last.writes[0] == b"ls\r"
    assert attacher.last.sizes == [(132, 50)]


def test_write_to_unknown_session(live_client):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "write", "data": {"sessionId": "claude-web-api-2", "data": "ls\r"}})
        error = receive_until(ws, "error")[-1]
        assert error["data"]["code"] == "session_not_found"
        assert error["session_name"] == "claude-web-api-2"


def test_write_to_base_session_is_rejected(live_client):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "write", "data": {"sessionId": "base-session", "data": "rm -rf /\r"}})
        assert receive_until(ws, "error")[-1]["data"]["code"] == "reserved_session"


def test_join_and_leave(live_client):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "join", "data": {"sessionName": "claude-web-api-2"}})
        events = receive_until(ws, "ack")
        status = next(e for e in events if e["type"] == "room-status")
        assert status["data"]["status"] == "connected"

        ws.send_json({"type": "join", "data": {"sessionName": "claude-web-api-2"}})
        ack = receive_until(ws, "ack")[-1]
        assert ack["data"]["result"]["status"] == "already-connected"

        ws.send_json({"type": "leave", "data": {}})
        receive_until(ws, "ack")
    assert live_client.app.state.connections.stats()["active_rooms"] == 0


def test_switch_session(live_client, mock_tmux):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({
            "type": "switch-session",
            "data": {"sessionName": "claude-web-api-2", "currentSessionName": "claude-web-api-1"},
        })
        events = receive_until(ws, "ack")
    switched = next(e for e in events if e["type"] == "session-switched")
    assert switched["data"]["sessionName"] == "claude-web-api-2"
    assert switched["data"]["currentSessionName"] == "claude-web-api-1"
    mock_tmux.switch_client.assert_awaited_once_with("claude-web-api-1", "claude-web-api-2")


def test_switch_to_missing_session(live_client):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "switch-session", "data": {"sessionName": "claude-web-nope-1"}})
        assert receive_until(ws, "error")[-1]["data"]["code"] == "session_not_found"


def test_scroll_and_go_to_bottom(live_client, mock_tmux):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({
            "type": "scroll",
            "data": {"sessionId": "claude-web-api-1", "direction": "up", "mode": "page"},
        })
        events = receive_until(ws, "ack")
        result = next(e for e in events if e["type"] == "terminal-scroll-result")
        assert result["data"]["success"] is True
        assert result["data"]["direction"] == "up"

        ws.send_json({"type": "go-to-bottom", "data": {"sessionId": "claude-web-api-1"}})
        events = receive_until(ws, "ack")
        result = next(e for e in events if e["type"] == "terminal-scroll-result")
        assert result["data"]["action"] == "go-to-bottom-and-exit"
    mock_tmux.copy_mode_command.assert_awaited_with("claude-web-api-1", "page-up", None)


def test_scroll_rejects_bad_direction(live_client):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "scroll", "data": {"sessionId": "claude-web-api-1", "direction": "left"}})
        assert receive_until(ws, "error")[-1]["data"]["code"] == "invalid_intent"


def test_detach_session(live_client, mock_tmux):
    with connect(live_client) as ws:
        ws.receive_json()
        ws.send_json({"type": "attach-session", "data": {"sessionName": "claude-web-api-1"}})
        receive_until(ws, "ack")
        ws.send_json({"type": "detach-session", "data": {"sessionName": "claude-web-api-1"}})
        ack = receive_until(ws, "ack")[-1]
        assert ack["data"]["result"]["detached"] is True
    assert live_client.app.state.pool.get("claude-web-api-1").state == "detached"
    mock_tmux.kill_session.assert_not_awaited()


def test_capacity_error_is_reported(live_client, config):
    with connect(live_client) as ws:
        ws.receive_json()
        for i in range(config.max_sessions):
            ws.send_json({"type": "create-session", "data": {"logicalName": f"p{i}"}})
            receive_until(ws, "ack")
        ws.send_json({"type": "create-session", "data": {"logicalName": "overflow"}})
        error = receive_until(ws, "error")[-1]
        assert error["data"]["code"] == "system_overload"
