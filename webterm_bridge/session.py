"""Terminal session — one PTY attachment to one tmux session.

Lifecycle::

    inactive ──start()──> active ──attachment exits──> detached ──start(reconnect)──> active
                            │                             │
                            ├──kill()──> killed           └──tmux session gone──> exited
                            └──spawn/startup failure──> error

``killed``, ``exited`` and ``error`` are terminal.  The attachment handle
exists only while the session is ``active``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
from collections import deque
from typing import Callable, Optional

from .echo import filter_echo, pending_command
from .errors import MultiplexerCommandFailed, SessionCreateFailed, TerminalNotActive
from .models import (
    OutputEntry,
    SessionEvent,
    SessionOptions,
    SessionState,
    SessionStatus,
    StartResult,
    TerminalSize,
    utcnow,
)
from .pty_process import Attachment, AttachmentFactory, PtyAttachment
from .replay import ReplayProtocol, ReplaySink
from .tmux import TmuxAdapter

logger = logging.getLogger(__name__)

# tmux default prefix (C-b) followed by "d"
DETACH_SEQUENCE = b"\x02d"

SessionListener = Callable[[SessionEvent], None]


class TerminalSession:
    """Owns one attachment process, its output buffer and its state."""

    def __init__(
        self,
        session_id: str,
        tmux: TmuxAdapter,
        options: SessionOptions | None = None,
        *,
        buffer_cap: int = 10_000,
        default_size: TerminalSize | None = None,
        start_timeout: float = 10.0,
        echo_filter: bool = True,
        attacher: AttachmentFactory = PtyAttachment.spawn,
        replay: ReplayProtocol | None = None,
    ) -> None:
        options = options or SessionOptions()
        size = default_size or TerminalSize()
        self.id = session_id
        self.cwd = options.cwd or os.getcwd()
        self.env = options.env
        self.size = TerminalSize(cols=options.cols or size.cols, rows=options.rows or size.rows)
        self.assistant_bound = options.assistant_bound
        self.state = SessionState.INACTIVE
        self.created_at = utcnow()
        self.last_activity = self.created_at
        self.pending_echo_command: Optional[str] = None
        self.output_buffer: deque[OutputEntry] = deque(maxlen=buffer_cap)

        self._tmux = tmux
        self._attacher = attacher
        self._replay = replay
        self._start_timeout = start_timeout
        self._echo_filter = echo_filter
        self._process: Optional[Attachment] = None
        self._listeners: dict[int, SessionListener] = {}
        self._tokens = itertools.count(1)
        self._ready: Optional[asyncio.Event] = None
        self._exited: Optional[asyncio.Event] = None
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def process(self) -> Optional[Attachment]:
        return self._process

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE and self._process is not None

    def uptime(self) -> float:
        return (utcnow() - self.created_at).total_seconds()

    def idle_seconds(self) -> float:
        return (utcnow() - self.last_activity).total_seconds()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> int:
        token = next(self._tokens)
        self._listeners[token] = listener
        return token

    def unsubscribe(self, token: int) -> None:
        self._listeners.pop(token, None)

    def _emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception:
                logger.exception("Session listener failed for %s", self.id)

    def _set_state(self, state: SessionState) -> None:
        if state == self.state:
            return
        logger.debug("Session %s: %s -> %s", self.id, self.state.value, state.value)
        self.state = state
        self._emit(SessionEvent(kind="state", session_id=self.id, timestamp=utcnow(), state=state))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, reconnect: bool = False, replay_sink: ReplaySink | None = None) -> StartResult:
        """Attach a PTY to the tmux session, creating the tmux session unless reconnecting."""
        if self._process is not None:
            raise SessionCreateFailed(f"Terminal {self.id} already started")
        if self.state.terminal:
            raise SessionCreateFailed(
                f"Terminal {self.id} is {self.state.value} and cannot be restarted"
            )

        logger.info(
            "%s tmux terminal session %s (cwd=%s)",
            "Reconnecting to" if reconnect else "Starting", self.id, self.cwd,
        )

        if not reconnect:
            try:
                if not await self._tmux.session_exists(self.id):
                    await self._tmux.create_session(
                        self.id, working_dir=self.cwd, cols=self.size.cols, rows=self.size.rows,
                    )
            except MultiplexerCommandFailed as exc:
                self._set_state(SessionState.ERROR)
                raise SessionCreateFailed(
                    f"Failed to start tmux terminal: {exc.message}", details=exc.details,
                ) from exc

        self._ready = asyncio.Event()
        self._exited = asyncio.Event()
        env = {**os.environ, **self.env, "TERM": "xterm-256color", "COLORTERM": "truecolor"}
        env.pop("TMUX", None)
        try:
            self._process = self._attacher(
                self._tmux.attach_command(self.id),
                cwd=self.cwd,
                env=env,
                cols=self.size.cols,
                rows=self.size.rows,
                on_data=self._handle_output,
                on_exit=self._handle_exit,
            )
        except Exception as exc:
            logger.error("Failed to spawn attachment for %s: %s", self.id, exc)
            self._set_state(SessionState.ERROR)
            raise SessionCreateFailed(f"Failed to start tmux terminal: {exc}") from exc

        if not await self._wait_ready():
            await self._abort_start()
            raise SessionCreateFailed(
                f"Terminal {self.id} produced no output within {self._start_timeout:.0f}s"
            )

        self.last_activity = utcnow()
        self._set_state(SessionState.ACTIVE)

        if reconnect and replay_sink is not None and self._replay is not None:
            self._spawn(self._replay.replay(self.id, replay_sink))

        logger.info("Tmux terminal session %s started (pid=%s)", self.id, self.pid)
        return StartResult(
            session_id=self.id,
            pid=self.pid,
            state=self.state,
            created_at=self.created_at,
            reconnect=reconnect,
        )

    async def _wait_ready(self) -> bool:
        """Wait for first output.  False on timeout or if the attachment died first."""
        ready = asyncio.ensure_future(self._ready.wait())
        exited = asyncio.ensure_future(self._exited.wait())
        try:
            await asyncio.wait(
                {ready, exited},
                timeout=self._start_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready.cancel()
            exited.cancel()
        return self._ready.is_set() and self._process is not None

    async def _abort_start(self) -> None:
        if self._process is not None:
            process, self._process = self._process, None
            await process.close(force=True)
        self._set_state(SessionState.ERROR)

    def write(self, data: str | bytes) -> None:
        if not self.is_active:
            raise TerminalNotActive(f"Terminal {self.id} not active", details=self.state.value)
        text = data.decode(errors="replace") if isinstance(data, bytes) else data
        command = pending_command(text)
        if command:
            self.pending_echo_command = command
        self.last_activity = utcnow()
        raw = data if isinstance(data, bytes) else data.encode()
        self._process.write(raw)
        logger.debug("Terminal %s input: %r", self.id, text[:100])

    def resize(self, cols: int, rows: int) -> TerminalSize:
        if not self.is_active:
            raise TerminalNotActive(f"Terminal {self.id} not active", details=self.state.value)
        self._process.resize(cols, rows)
        self.size = TerminalSize(cols=cols, rows=rows)
        logger.debug("Terminal %s resized to %dx%d", self.id, cols, rows)
        return self.size

    async def detach(self) -> bool:
        """Send tmux's detach key and drop the attachment.  Returns False if already detached."""
        process = self._process
        if process is None:
            return False
        self._process = None
        try:
            process.write(DETACH_SEQUENCE)
        except (OSError, ValueError):
            logger.debug("Detach key not delivered to %s", self.id, exc_info=True)
        await process.close()
        if not self.state.terminal:
            self._set_state(SessionState.DETACHED)
        logger.info("Detached from tmux session %s", self.id)
        return True

    async def kill(self) -> None:
        """Detach and destroy the tmux session.  Idempotent."""
        if self.state == SessionState.KILLED:
            return
        await self.detach()
        if not await self._tmux.kill_session(self.id):
            raise MultiplexerCommandFailed(f"Failed to kill tmux session {self.id}")
        self._set_state(SessionState.KILLED)
        for task in list(self._tasks):
            task.cancel()

    # ------------------------------------------------------------------
    # Attachment callbacks
    # ------------------------------------------------------------------

    def _handle_output(self, data: str) -> None:
        now = utcnow()
        self.last_activity = now
        self.output_buffer.append(OutputEntry(timestamp=now, data=data))
        if self._ready is not None:
            self._ready.set()

        processed = data
        if self._echo_filter and self.pending_echo_command:
            try:
                processed, inspected = filter_echo(data, self.pending_echo_command)
                if inspected:
                    self.pending_echo_command = None
            except Exception:
                logger.exception("Echo filter failed for %s", self.id)
                processed = data
                self.pending_echo_command = None
        if processed:
            self._emit(SessionEvent(kind="output", session_id=self.id, timestamp=now, data=processed))

    def _handle_exit(self, exit_code: Optional[int]) -> None:
        logger.info("Tmux attach process for %s exited (code=%s, uptime=%.0fs)", self.id, exit_code, self.uptime())
        self._process = None
        if self._exited is not None:
            self._exited.set()
        if self.state == SessionState.ACTIVE:
            self._set_state(SessionState.DETACHED)
            self._spawn(self._check_multiplexer())

    async def _check_multiplexer(self) -> None:
        """A detached session whose tmux session is gone has exited."""
        try:
            exists = await self._tmux.session_exists(self.id)
        except Exception:
            logger.debug("has-session check failed for %s", self.id, exc_info=True)
            return
        if not exists and self.state == SessionState.DETACHED:
            self._set_state(SessionState.EXITED)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def recent_output(self, lines: int = 100) -> list[OutputEntry]:
        if lines <= 0:
            return []
        return list(self.output_buffer)[-lines:]

    def status(self) -> SessionStatus:
        return SessionStatus(
            session_id=self.id,
            state=self.state,
            pid=self.pid,
            created_at=self.created_at,
            last_activity=self.last_activity,
            uptime_s=self.uptime(),
            size=self.size,
            cwd=self.cwd,
            buffer_size=len(self.output_buffer),
            assistant_bound=self.assistant_bound,
        )
