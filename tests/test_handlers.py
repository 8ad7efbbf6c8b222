"""Tests for intent dispatch edge cases not covered through the socket."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from webterm_bridge.connections import ConnectionManager
from webterm_bridge.handlers import IntentDispatcher
from webterm_bridge.models import IntentType, WSEventType
from webterm_bridge.projects import DirectoryProjectResolver
from webterm_bridge.scroll import ScrollBridge


@pytest.fixture
def connections() -> MagicMock:
    connections = MagicMock(spec=ConnectionManager)

    async def sink(data):
        pass

    connections.replay_sink.return_value = sink
    return connections


@pytest.fixture
def dispatcher(pool, naming, mock_tmux, connections, config) -> IntentDispatcher:
    config.intent_timeout_s = 0.05
    return IntentDispatcher(
        pool, naming, mock_tmux, connections, ScrollBridge(mock_tmux),
        DirectoryProjectResolver(config.projects_root), config,
    )


def sent_types(connections: MagicMock) -> list[WSEventType]:
    return [c.args[1] for c in connections.send.call_args_list]


async def test_slow_intent_times_out_but_finishes(dispatcher, connections):
    finished = asyncio.Event()

    async def slow(connection_id, data):
        await asyncio.sleep(0.2)
        finished.set()
        return {}

    dispatcher._handlers[IntentType.LEAVE] = slow
    await dispatcher.dispatch("c1", {"type": "leave", "id": "x"})

    assert sent_types(connections) == [WSEventType.ERROR]
    payload = connections.send.call_args.args[2]
    assert payload["code"] == "intent_timeout"
    assert payload["id"] == "x"

    await asyncio.wait_for(finished.wait(), 1)


async def test_unexpected_exception_becomes_error(dispatcher, connections):
    async def broken(connection_id, data):
        raise KeyError("oops")

    dispatcher._handlers[IntentType.LEAVE] = broken
    await dispatcher.dispatch("c1", {"type": "leave"})
    payload = connections.send.call_args.args[2]
    assert connections.send.call_args.args[1] == WSEventType.ERROR
    assert payload["message"] == "Internal server error"


async def test_cancel_inflight(dispatcher):
    started = asyncio.Event()

    async def hang(connection_id, data):
        started.set()
        await asyncio.sleep(10)

    dispatcher._handlers[IntentType.LEAVE] = hang
    await dispatcher.dispatch("c1", {"type": "leave"})
    await started.wait()
    await dispatcher.cancel_inflight()
    assert not dispatcher._inflight


async def test_switch_leaves_pool_clients_alone(dispatcher, pool, mock_tmux):
    await pool.create_or_attach("claude-web-api-1")
    await dispatcher.switch_session("c1", {
        "sessionName": "claude-web-api-2",
        "currentSessionName": "claude-web-api-1",
    })
    mock_tmux.switch_client.assert_not_awaited()
    assert pool.is_active("claude-web-api-2")


async def test_create_with_explicit_cwd(dispatcher, attacher, tmp_path):
    result = await dispatcher.create_session("c1", {"sessionName": "claude-web-x-1", "workingDir": str(tmp_path)})
    assert result["sessionName"] == "claude-web-x-1"
    assert attacher.last.cwd == str(tmp_path)
