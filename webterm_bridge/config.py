"""Bridge configuration — reads from ~/.config/webterm-bridge/bridge.conf."""

from __future__ import annotations

import json
import secrets
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


_DEFAULT_CONFIG_DIR = Path.home() / ".config" / "webterm-bridge"
_DEFAULT_CONFIG_FILE = _DEFAULT_CONFIG_DIR / "bridge.conf"
_DEFAULT_PROJECTS_ROOT = Path.home() / "projects"


class BridgeConfig(BaseSettings):
    """Bridge service configuration."""

    # Network
    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=3000, description="Bind port")

    # Authentication
    bearer_token: str = Field(default="", description="Bearer token for API auth")

    # Naming
    session_prefix: str = Field(default="claude-web", description="Prefix of every managed tmux session")
    base_session_name: str = Field(
        default="base-session",
        description="Reserved infrastructure session that clients may not delete, attach or write",
    )

    # tmux
    tmux_binary: str = Field(default="tmux")
    tmux_socket: str = Field(default="", description="Optional tmux -L socket name")
    tmux_command_timeout_s: float = Field(default=5.0)
    tmux_concurrency: int = Field(default=8, ge=1, description="Max concurrent tmux invocations")

    # Pool
    max_sessions: int = Field(default=10, ge=1)
    buffer_cap: int = Field(default=10_000, ge=1, description="Output entries kept per session")
    default_cols: int = Field(default=80, ge=1)
    default_rows: int = Field(default=24, ge=1)
    start_timeout_s: float = Field(
        default=10.0,
        description="Time allowed for a fresh attachment to produce output",
    )
    cleanup_interval_s: float = Field(default=300.0)
    idle_threshold_s: float = Field(default=1800.0)
    echo_filter: bool = Field(default=True, description="Strip the echoed command line after a write")

    # Replay
    replay_settle_s: float = Field(default=0.5, description="Wait before capturing the pane on reattach")
    replay_step_s: float = Field(default=0.05, description="Gap between replay frames")

    # Transport
    intent_timeout_s: float = Field(
        default=15.0,
        description="Upper bound before a client gets an error for an unanswered intent",
    )

    # Projects
    projects_root: Path = Field(default=_DEFAULT_PROJECTS_ROOT)

    model_config = {"env_prefix": "WEBTERM_BRIDGE_"}

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "BridgeConfig":
        """Load config from JSON file, creating defaults if missing."""
        path = path or _DEFAULT_CONFIG_FILE
        if path.exists():
            data = json.loads(path.read_text())
            return cls(**data)
        # Generate default config with a random token
        cfg = cls(bearer_token=secrets.token_urlsafe(32))
        cfg.save(path)
        return cfg

    def save(self, path: Optional[Path] = None) -> None:
        """Persist current config to disk."""
        path = path or _DEFAULT_CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        path.write_text(json.dumps(data, indent=2) + "\n")
        path.chmod(0o600)
