"""WebTerm Bridge — FastAPI application entry point."""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from .config import BridgeConfig
from .connections import ConnectionManager
from .handlers import IntentDispatcher
from .naming import SessionNaming
from .pool import TerminalSessionPool
from .projects import DirectoryProjectResolver
from .pty_process import AttachmentFactory, PtyAttachment
from .replay import ReplayProtocol
from .routes import sessions, status, websocket
from .scroll import ScrollBridge
from .tmux import TmuxAdapter

logger = logging.getLogger("webterm_bridge")


def init_services(
    app: FastAPI,
    tmux: Optional[TmuxAdapter] = None,
    attacher: AttachmentFactory = PtyAttachment.spawn,
) -> None:
    """Build the adapter, pool, connection manager and dispatcher onto ``app.state``."""
    config: BridgeConfig = app.state.config
    tmux = tmux or TmuxAdapter(
        binary=config.tmux_binary,
        socket_name=config.tmux_socket,
        timeout=config.tmux_command_timeout_s,
        concurrency=config.tmux_concurrency,
        prefix=config.session_prefix,
    )
    naming = SessionNaming(config.session_prefix, tmux)
    replay = ReplayProtocol(tmux, settle_delay=config.replay_settle_s, step_delay=config.replay_step_s)
    pool = TerminalSessionPool(tmux, naming, config, replay=replay, attacher=attacher)
    connections = ConnectionManager(pool)
    projects = DirectoryProjectResolver(config.projects_root)

    app.state.tmux = tmux
    app.state.naming = naming
    app.state.pool = pool
    app.state.connections = connections
    app.state.projects = projects
    app.state.dispatcher = IntentDispatcher(
        pool, naming, tmux, connections, ScrollBridge(tmux), projects, config,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan — start/stop background services."""
    config: BridgeConfig = app.state.config
    if getattr(app.state, "pool", None) is None:
        init_services(app)
    pool: TerminalSessionPool = app.state.pool

    pool.start()
    logger.info(
        "WebTerm Bridge started on %s:%d (prefix=%s, max sessions=%d)",
        config.host,
        config.port,
        config.session_prefix,
        config.max_sessions,
    )
    yield
    await app.state.dispatcher.cancel_inflight()
    await app.state.connections.close_all()
    await pool.shutdown()
    logger.info("WebTerm Bridge stopped")


def create_app(config: BridgeConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if config is None:
        config = BridgeConfig.load()

    app = FastAPI(
        title="WebTerm Bridge",
        description="tmux-backed terminal sessions shared over WebSocket",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.pool = None

    # Mount route modules
    app.include_router(sessions.router)
    app.include_router(websocket.router)
    app.include_router(status.router)

    return app


def cli_main() -> None:
    """CLI entry point — parse args and run the server."""
    parser = argparse.ArgumentParser(description="WebTerm Bridge Service")
    parser.add_argument("--host", default=None, help="Bind address")
    parser.add_argument("--port", type=int, default=None, help="Bind port")
    parser.add_argument("--config", type=Path, default=None, help="Config file path")
    parser.add_argument("--max-sessions", type=int, default=None, help="Session pool capacity")
    parser.add_argument("--log-level", default="INFO", help="Log level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    config = BridgeConfig.load(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.max_sessions:
        config.max_sessions = args.max_sessions

    app = create_app(config)

    import uvicorn
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    cli_main()
