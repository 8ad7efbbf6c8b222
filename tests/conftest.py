"""Shared test fixtures for the WebTerm Bridge test suite."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from webterm_bridge.config import BridgeConfig
from webterm_bridge.main import create_app, init_services
from webterm_bridge.naming import SessionNaming
from webterm_bridge.pool import TerminalSessionPool
from webterm_bridge.replay import ReplayProtocol
from webterm_bridge.tmux import TmuxAdapter, TmuxSessionInfo

PREFIX = "claude-web"


class FakeAttachment:
    """Stands in for a PTY running ``tmux attach-session``."""

    _next_pid = 40_000

    def __init__(self, argv, on_data, on_exit, banner: Optional[str]) -> None:
        FakeAttachment._next_pid += 1
        self.pid = FakeAttachment._next_pid
        self.argv = argv
        self.writes: list[bytes] = []
        self.sizes: list[tuple[int, int]] = []
        self.closed = False
        self._on_data = on_data
        self._on_exit = on_exit
        if banner is not None:
            asyncio.get_running_loop().call_soon(self.emit, banner)

    def emit(self, text: str) -> None:
        if not self.closed:
            self._on_data(text)

    def exit(self, code: int = 0) -> None:
        """Simulate the attach process dying on its own."""
        self.closed = True
        self._on_exit(code)

    def write(self, data: bytes) -> None:
        self.writes.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    def isalive(self) -> bool:
        return not self.closed

    async def close(self, force: bool = False) -> None:
        self.closed = True


class FakeAttacher:
    """AttachmentFactory recording every spawn."""

    def __init__(self, banner: Optional[str] = "$ ") -> None:
        self.banner = banner
        self.spawned: list[FakeAttachment] = []
        self.fail_with: Optional[Exception] = None

    def __call__(self, argv, *, cwd, env, cols, rows, on_data, on_exit) -> FakeAttachment:
        if self.fail_with is not None:
            raise self.fail_with
        attachment = FakeAttachment(argv, on_data, on_exit, self.banner)
        attachment.cwd = cwd
        attachment.env = env
        attachment.size = (cols, rows)
        self.spawned.append(attachment)
        return attachment

    @property
    def last(self) -> FakeAttachment:
        return self.spawned[-1]


@pytest.fixture
def config(tmp_path: Path) -> BridgeConfig:
    """Create a test config with temp paths and no artificial delays."""
    (tmp_path / "projects" / "api").mkdir(parents=True)
    return BridgeConfig(
        host="127.0.0.1",
        port=3000,
        bearer_token="test-token-123",
        session_prefix=PREFIX,
        max_sessions=3,
        buffer_cap=50,
        start_timeout_s=0.5,
        replay_settle_s=0,
        replay_step_s=0,
        intent_timeout_s=2,
        cleanup_interval_s=3600,
        projects_root=tmp_path / "projects",
    )


@pytest.fixture
def tmux_sessions() -> list[TmuxSessionInfo]:
    """What ``list_sessions`` reports; tests mutate it."""
    return [
        TmuxSessionInfo(name=f"{PREFIX}-api-1", width=120, height=40, created=1700000000, attached=True),
        TmuxSessionInfo(name=f"{PREFIX}-api-2", width=120, height=40, created=1700001000, attached=False),
    ]


@pytest.fixture
def mock_tmux(tmux_sessions: list[TmuxSessionInfo]) -> AsyncMock:
    """Mock TmuxAdapter whose session set follows create/kill calls."""
    tmux = AsyncMock(spec=TmuxAdapter)

    def names() -> set[str]:
        return {info.name for info in tmux_sessions}

    async def create_session(name, working_dir="", cols=None, rows=None):
        tmux_sessions.append(TmuxSessionInfo(name=name, width=cols or 80, height=rows or 24))

    async def kill_session(name):
        tmux_sessions[:] = [info for info in tmux_sessions if info.name != name]
        return True

    async def session_info(name):
        return next((info for info in tmux_sessions if info.name == name), None)

    async def session_exists(name):
        return name in names()

    async def list_sessions():
        return list(tmux_sessions)

    tmux.session_exists.side_effect = session_exists
    tmux.create_session.side_effect = create_session
    tmux.kill_session.side_effect = kill_session
    tmux.list_sessions.side_effect = list_sessions
    tmux.session_info.side_effect = session_info
    tmux.attach_command = MagicMock(side_effect=lambda name: ["tmux", "attach-session", "-t", name])
    tmux.capture_pane.return_value = "$ ls\nfile1\n$ "
    tmux.cursor_position.return_value = (2, 2)
    tmux.in_copy_mode.return_value = False
    tmux.enter_copy_mode.return_value = True
    tmux.copy_mode_command.return_value = True
    tmux.exit_copy_mode.return_value = True
    tmux.switch_client.return_value = True
    return tmux


@pytest.fixture
def attacher() -> FakeAttacher:
    return FakeAttacher()


@pytest.fixture
def make_attacher():
    """Factory for attachers with a custom banner (None: never prints)."""
    return FakeAttacher


@pytest.fixture
def naming(mock_tmux: AsyncMock) -> SessionNaming:
    return SessionNaming(PREFIX, mock_tmux)


@pytest.fixture
def pool(mock_tmux: AsyncMock, naming: SessionNaming, config: BridgeConfig, attacher: FakeAttacher):
    replay = ReplayProtocol(mock_tmux, settle_delay=0, step_delay=0)
    return TerminalSessionPool(mock_tmux, naming, config, replay=replay, attacher=attacher)


@pytest.fixture
def app(config: BridgeConfig, mock_tmux: AsyncMock, attacher: FakeAttacher):
    """Create a FastAPI test app with mocked tmux and fake attachments."""
    app = create_app(config)
    init_services(app, tmux=mock_tmux, attacher=attacher)
    return app


@pytest.fixture
def client(app) -> TestClient:
    """Create a test client with auth header."""
    return TestClient(app, headers={"Authorization": "Bearer test-token-123"})


@pytest.fixture
def unauth_client(app) -> TestClient:
    """Create a test client without auth."""
    return TestClient(app)


@pytest.fixture
def ws_url() -> Callable[[str], str]:
    return lambda token="test-token-123": f"/api/ws?token={token}"
