"""Tmux adapter — one async method per multiplexer operation.

All argument building and output parsing for tmux lives here; callers pass
structured arguments and get structured results back.  Commands run as
asyncio subprocesses behind a semaphore so a hung tmux cannot stall the
event loop or starve unrelated sessions.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import MultiplexerCommandFailed

logger = logging.getLogger(__name__)

# stderr fragments meaning "no tmux server yet", which is an empty listing
_NO_SERVER_MARKERS = ("no server running", "No such file or directory", "error connecting to")

_COPY_MODE_COMMANDS = {
    "scroll-up",
    "scroll-down",
    "page-up",
    "page-down",
    "halfpage-up",
    "halfpage-down",
    "history-bottom",
    "history-top",
    "cancel",
}


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class TmuxSessionInfo:
    name: str
    width: int = 0
    height: int = 0
    created: int = 0  # unix timestamp
    attached: bool = False


class TmuxAdapter:
    """Async wrapper around the tmux CLI."""

    def __init__(
        self,
        binary: str = "tmux",
        socket_name: str = "",
        timeout: float = 5.0,
        concurrency: int = 8,
        prefix: str = "",
    ) -> None:
        self._binary = binary
        self._socket_name = socket_name
        self._timeout = timeout
        self._prefix = prefix
        self._slots = asyncio.Semaphore(concurrency)

    def base_command(self) -> list[str]:
        """The tmux argv prefix, including the socket selector when configured."""
        cmd = [self._binary]
        if self._socket_name:
            cmd += ["-L", self._socket_name]
        return cmd

    def attach_command(self, name: str) -> list[str]:
        """argv for the attachment process that the PTY runs."""
        return self.base_command() + ["attach-session", "-t", name]

    async def _run(self, *args: str, timeout: float | None = None) -> CommandResult:
        """Run one tmux command and return its exit status and output."""
        cmd = self.base_command() + list(args)
        async with self._slots:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                return CommandResult(-1, "", str(exc))
            try:
                stdout, stderr = await asyncio.wait_for(
                    proc.communicate(), timeout=timeout or self._timeout
                )
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                logger.warning("tmux command timed out: %s", " ".join(cmd))
                return CommandResult(-1, "", "timed out")
        return CommandResult(
            proc.returncode,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def session_exists(self, name: str) -> bool:
        result = await self._run("has-session", "-t", f"={name}")
        return result.ok

    async def create_session(
        self,
        name: str,
        working_dir: str = "",
        cols: int | None = None,
        rows: int | None = None,
    ) -> None:
        """Create a detached tmux session.  Raises MultiplexerCommandFailed."""
        args = ["new-session", "-d", "-s", name]
        if working_dir:
            args += ["-c", working_dir]
        if cols and rows:
            args += ["-x", str(cols), "-y", str(rows)]
        result = await self._run(*args)
        if not result.ok:
            raise MultiplexerCommandFailed(
                f"Failed to create tmux session {name}",
                command=self.base_command() + args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        logger.info("Created tmux session %s (cwd=%s)", name, working_dir or "-")

    async def kill_session(self, name: str) -> bool:
        """Kill a tmux session.  A session that is already gone counts as success."""
        result = await self._run("kill-session", "-t", f"={name}")
        if result.ok:
            logger.info("Killed tmux session %s", name)
            return True
        if "can't find session" in result.stderr or any(
            m in result.stderr for m in _NO_SERVER_MARKERS
        ):
            logger.debug("Tmux session already gone: %s", name)
            return True
        logger.error("Failed to kill tmux session %s: %s", name, result.stderr.strip())
        return False

    async def list_sessions(self) -> list[TmuxSessionInfo]:
        """List tmux sessions carrying the configured prefix."""
        result = await self._run(
            "list-sessions",
            "-F", "#{session_name}\t#{session_width}\t#{session_height}\t#{session_created}\t#{session_attached}",
        )
        if not result.ok:
            if any(m in result.stderr for m in _NO_SERVER_MARKERS):
                return []
            raise MultiplexerCommandFailed(
                "Failed to list tmux sessions",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        sessions: list[TmuxSessionInfo] = []
        for line in result.stdout.strip().splitlines():
            parts = line.split("\t")
            if len(parts) < 5:
                continue
            name = parts[0]
            if self._prefix and not name.startswith(self._prefix + "-"):
                continue
            sessions.append(TmuxSessionInfo(
                name=name,
                width=int(parts[1] or 0),
                height=int(parts[2] or 0),
                created=int(parts[3] or 0),
                attached=parts[4] != "0",
            ))
        return sessions

    async def session_info(self, name: str) -> Optional[TmuxSessionInfo]:
        for info in await self.list_sessions():
            if info.name == name:
                return info
        return None

    # ------------------------------------------------------------------
    # Screen state
    # ------------------------------------------------------------------

    async def capture_pane(self, name: str, scrollback: bool = True, escapes: bool = True) -> str:
        """Capture pane contents, optionally with full history and SGR escapes."""
        args = ["capture-pane", "-p", "-t", name]
        if escapes:
            args.append("-e")
        if scrollback:
            args += ["-S", "-"]
        result = await self._run(*args)
        if not result.ok:
            logger.error("Failed to capture tmux pane %s: %s", name, result.stderr.strip())
            return ""
        return result.stdout

    async def cursor_position(self, name: str) -> Optional[tuple[int, int]]:
        """Return the pane cursor as 0-based ``(x, y)``."""
        result = await self._run("display-message", "-p", "-t", name, "#{cursor_x},#{cursor_y}")
        if not result.ok:
            return None
        try:
            x, y = result.stdout.strip().split(",")
            return int(x), int(y)
        except ValueError:
            logger.debug("Unparseable cursor position for %s: %r", name, result.stdout)
            return None

    # ------------------------------------------------------------------
    # Copy mode
    # ------------------------------------------------------------------

    async def in_copy_mode(self, name: str) -> bool:
        result = await self._run("display-message", "-p", "-t", name, "#{pane_in_mode}")
        return result.ok and result.stdout.strip() == "1"

    async def enter_copy_mode(self, name: str) -> bool:
        result = await self._run("copy-mode", "-t", name)
        return result.ok

    async def copy_mode_command(self, name: str, command: str, repeat: int | None = None) -> bool:
        """Run a copy-mode command (``send-keys -X``), optionally repeated."""
        if command not in _COPY_MODE_COMMANDS:
            raise ValueError(f"Unsupported copy-mode command: {command}")
        args = ["send-keys", "-t", name]
        if repeat and repeat > 1:
            args += ["-N", str(repeat)]
        args += ["-X", command]
        result = await self._run(*args)
        return result.ok

    async def exit_copy_mode(self, name: str) -> bool:
        return await self.copy_mode_command(name, "cancel")

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    async def list_clients(self, name: str) -> list[str]:
        result = await self._run("list-clients", "-t", name, "-F", "#{client_name}")
        if not result.ok:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def switch_client(self, current: str, target: str) -> bool:
        """Move the client viewing ``current`` over to ``target``."""
        clients = await self.list_clients(current)
        if not clients:
            logger.warning("No tmux client attached to %s to switch", current)
            return False
        result = await self._run("switch-client", "-c", clients[0], "-t", target)
        if not result.ok:
            logger.error("switch-client %s -> %s failed: %s", current, target, result.stderr.strip())
        return result.ok
