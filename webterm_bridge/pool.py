"""Terminal session pool — the single owner of every TerminalSession.

At most one live attachment per session id: every mutation for a given id
happens under that id's lock, and a caller that finds a live session
returns it instead of spawning another attachment.

Output reaches consumers through pool-level subscriptions
(``subscribe(session_id, listener)``).  They are keyed by session id, not
by session object, so they survive a session being replaced after a
forced restart or a crash.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from .config import BridgeConfig
from .errors import BridgeError, SessionNotFound, SystemOverload
from .models import (
    AvailableSession,
    OutputEntry,
    SessionEvent,
    SessionOptions,
    SessionResult,
    SessionState,
    SessionStatus,
    TerminalSize,
)
from .naming import SessionNaming
from .projects import ProjectRef
from .pty_process import AttachmentFactory, PtyAttachment
from .replay import ReplayProtocol, ReplaySink
from .session import SessionListener, TerminalSession
from .tmux import TmuxAdapter

logger = logging.getLogger(__name__)


class TerminalSessionPool:
    """Bounded registry of active terminal sessions."""

    def __init__(
        self,
        tmux: TmuxAdapter,
        naming: SessionNaming,
        config: BridgeConfig,
        replay: ReplayProtocol | None = None,
        attacher: AttachmentFactory = PtyAttachment.spawn,
    ) -> None:
        self._tmux = tmux
        self._naming = naming
        self._config = config
        self._replay = replay or ReplayProtocol(
            tmux, settle_delay=config.replay_settle_s, step_delay=config.replay_step_s
        )
        self._attacher = attacher
        self._sessions: dict[str, TerminalSession] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pending = 0
        self._listeners: dict[str, dict[int, SessionListener]] = defaultdict(dict)
        self._tokens = itertools.count(1)
        self._token_keys: dict[int, str] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def max_sessions(self) -> int:
        return self._config.max_sessions

    @property
    def replay(self) -> ReplayProtocol:
        return self._replay

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, session_id: str, listener: SessionListener) -> int:
        token = next(self._tokens)
        self._listeners[session_id][token] = listener
        self._token_keys[token] = session_id
        return token

    def unsubscribe(self, token: int) -> None:
        session_id = self._token_keys.pop(token, None)
        if session_id is None:
            return
        listeners = self._listeners.get(session_id)
        if listeners is not None:
            listeners.pop(token, None)
            if not listeners:
                del self._listeners[session_id]

    def _dispatch(self, event: SessionEvent) -> None:
        for listener in list(self._listeners.get(event.session_id, {}).values()):
            try:
                listener(event)
            except Exception:
                logger.exception("Pool listener failed for %s", event.session_id)

    # ------------------------------------------------------------------
    # Creation / attachment
    # ------------------------------------------------------------------

    def _new_session(self, session_id: str, options: SessionOptions) -> TerminalSession:
        session = TerminalSession(
            session_id,
            self._tmux,
            options,
            buffer_cap=self._config.buffer_cap,
            default_size=TerminalSize(cols=self._config.default_cols, rows=self._config.default_rows),
            start_timeout=self._config.start_timeout_s,
            echo_filter=self._config.echo_filter,
            attacher=self._attacher,
            replay=self._replay,
        )
        session.subscribe(self._dispatch)
        return session

    def _result(self, session: TerminalSession, reconnect: bool, reused: bool = False) -> SessionResult:
        ident = self._naming.parse(session.id)
        return SessionResult(
            session_id=session.id,
            pid=session.pid,
            state=session.state,
            created_at=session.created_at,
            reconnect=reconnect,
            reused=reused,
            logical_name=ident.logical_name if ident else None,
            sequence=ident.sequence if ident else None,
        )

    async def create_or_attach(
        self,
        session_id: str,
        options: SessionOptions | None = None,
        replay_sink: ReplaySink | None = None,
    ) -> SessionResult:
        """Attach to ``session_id``, creating the tmux session when it does not exist."""
        options = options or SessionOptions()
        async with self._locks[session_id]:
            existing = self._sessions.get(session_id)
            if existing is not None:
                if existing.is_active:
                    logger.debug("Reusing live attachment for %s", session_id)
                    return self._result(existing, reconnect=False, reused=True)
                if existing.state == SessionState.DETACHED:
                    return await self._reattach(existing, replay_sink)
                # Terminal state: forget it and start over
                self._sessions.pop(session_id, None)

            if len(self._sessions) + self._pending >= self.max_sessions:
                raise SystemOverload(
                    f"Maximum number of terminal sessions ({self.max_sessions}) reached"
                )
            # Hold the slot while tmux is queried; the entry itself takes it over
            self._pending += 1
            try:
                reconnect = await self._tmux.session_exists(session_id)
            finally:
                self._pending -= 1
            session = self._new_session(session_id, options)
            self._sessions[session_id] = session
            try:
                await session.start(reconnect=reconnect, replay_sink=replay_sink)
            except BaseException:
                self._sessions.pop(session_id, None)
                raise

        logger.info(
            "%s terminal session %s (sessions: %d)",
            "Attached to" if reconnect else "Created", session_id, len(self._sessions),
        )
        return self._result(session, reconnect=reconnect)

    async def _reattach(self, session: TerminalSession, replay_sink: ReplaySink | None) -> SessionResult:
        try:
            await session.start(reconnect=True, replay_sink=replay_sink)
        except BaseException:
            self._sessions.pop(session.id, None)
            raise
        logger.info("Reattached detached session %s", session.id)
        return self._result(session, reconnect=True)

    async def create_new(self, logical_name: str, options: SessionOptions | None = None) -> SessionResult:
        """Create a fresh session named ``<prefix>-<logical>-<next sequence>``."""
        ident = await self._naming.allocate(logical_name, known_names=self._sessions)
        return await self.create_or_attach(ident.composed_name, options)

    async def create_timestamped(self, logical_name: str, options: SessionOptions | None = None) -> SessionResult:
        """Create an ad-hoc session whose name records its creation time."""
        name = self._naming.compose_timestamped(logical_name)
        return await self.create_or_attach(name, options)

    async def create_assistant_terminal(
        self,
        project: ProjectRef,
        options: SessionOptions | None = None,
    ) -> SessionResult:
        """Create a terminal in the project directory for the assistant subprocess."""
        base = options or SessionOptions()
        options = base.model_copy(update={
            "cwd": str(project.path),
            "env": {
                **base.env,
                "ASSISTANT_PROJECT_ID": project.logical_name,
                "ASSISTANT_WORKING_DIR": str(project.path),
            },
            "assistant_bound": True,
        })
        return await self.create_new(project.logical_name, options)

    # ------------------------------------------------------------------
    # Lookup and I/O
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> TerminalSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Terminal session {session_id} not found")
        return session

    def is_active(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.is_active

    def write(self, session_id: str, data: str | bytes) -> None:
        self.get(session_id).write(data)

    def resize(self, session_id: str, cols: int, rows: int) -> TerminalSize:
        return self.get(session_id).resize(cols, rows)

    def recent_output(self, session_id: str, lines: int = 100) -> list[OutputEntry]:
        return self.get(session_id).recent_output(lines)

    async def status(self, session_id: str) -> Optional[SessionStatus | AvailableSession]:
        """Status of an in-memory session, or the tmux view of an untracked one."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session.status()
        info = await self._tmux.session_info(session_id)
        if info is None:
            return None
        return AvailableSession(
            session_id=info.name,
            created=datetime.fromtimestamp(info.created, tz=timezone.utc) if info.created else None,
            attached=info.attached,
            active_in_pool=False,
            state=SessionState.DETACHED,
        )

    async def replay_to(self, session_id: str, sink: ReplaySink) -> bool:
        return await self._replay.replay(session_id, sink)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def destroy(self, session_id: str) -> None:
        """Kill the session and its tmux session.  The entry is removed even if the kill fails."""
        async with self._locks[session_id]:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(f"Terminal session {session_id} not found")
            try:
                await session.kill()
            finally:
                self._sessions.pop(session_id, None)
        logger.info("Terminal session %s destroyed (sessions: %d)", session_id, len(self._sessions))

    async def detach(self, session_id: str) -> bool:
        async with self._locks[session_id]:
            session = self.get(session_id)
            return await session.detach()

    async def force_restart(self, session_id: str) -> None:
        """Best-effort kill of both the in-memory session and the tmux session."""
        logger.info("Force restarting terminal session %s", session_id)
        async with self._locks[session_id]:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                try:
                    await session.kill()
                except BridgeError as exc:
                    logger.warning("Failed to kill %s (proceeding anyway): %s", session_id, exc.message)
            try:
                if await self._tmux.session_exists(session_id):
                    if not await self._tmux.kill_session(session_id):
                        logger.warning("Tmux session %s could not be killed (proceeding anyway)", session_id)
            except BridgeError as exc:
                logger.warning("tmux check failed during restart of %s: %s", session_id, exc.message)
        logger.info("Terminal session %s force restart completed (sessions: %d)", session_id, len(self._sessions))

    async def destroy_all(self) -> None:
        """Kill every tracked session and every prefixed tmux session."""
        for session_id in list(self._sessions):
            try:
                await self.destroy(session_id)
            except BridgeError as exc:
                logger.error("Error destroying session %s: %s", session_id, exc.message)
        try:
            infos = await self._tmux.list_sessions()
        except BridgeError as exc:
            logger.error("Failed to list tmux sessions for destruction: %s", exc.message)
            return
        for info in infos:
            await self._tmux.kill_session(info.name)
        logger.info("All terminal sessions destroyed")

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_available(self) -> list[AvailableSession]:
        """In-memory sessions plus tmux sessions not tracked in memory."""
        try:
            infos = {info.name: info for info in await self._tmux.list_sessions()}
        except BridgeError as exc:
            logger.error("Failed to list tmux sessions: %s", exc.message)
            infos = {}
        available: list[AvailableSession] = []
        for session_id, session in self._sessions.items():
            info = infos.get(session_id)
            available.append(AvailableSession(
                session_id=session_id,
                created=session.created_at,
                attached=info.attached if info else session.is_active,
                active_in_pool=True,
                state=session.state,
            ))
        for name, info in infos.items():
            if name in self._sessions:
                continue
            available.append(AvailableSession(
                session_id=name,
                created=datetime.fromtimestamp(info.created, tz=timezone.utc) if info.created else None,
                attached=info.attached,
                active_in_pool=False,
                state=SessionState.DETACHED,
            ))
        return available

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    async def cleanup_inactive(self, now: float | None = None) -> list[str]:
        """Drop dead entries and reap aged timestamped tmux sessions.

        Returns the names of tmux sessions that were killed.
        """
        now = time.time() if now is None else now
        threshold = self._config.idle_threshold_s

        for session_id in list(self._sessions):
            lock = self._locks[session_id]
            if lock.locked():
                # Another pool operation owns this id
                continue
            async with lock:
                session = self._sessions.get(session_id)
                if session is None:
                    continue
                stale = session.state.terminal or (
                    session.state == SessionState.DETACHED and session.idle_seconds() > threshold
                )
                if stale:
                    logger.info("Dropping %s session %s from pool", session.state.value, session_id)
                    self._sessions.pop(session_id, None)

        reaped: list[str] = []
        try:
            infos = await self._tmux.list_sessions()
        except BridgeError as exc:
            logger.warning("Cleanup could not list tmux sessions: %s", exc.message)
            return reaped
        for info in infos:
            created = self._naming.created_at(info.name)
            if created is None or now - created <= threshold:
                continue
            logger.info("Cleaning up old tmux session %s (age %.0fs)", info.name, now - created)
            try:
                if await self._tmux.kill_session(info.name):
                    reaped.append(info.name)
            except Exception:
                logger.exception("Failed to reap tmux session %s", info.name)
        return reaped

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval_s)
            try:
                await self.cleanup_inactive()
            except Exception:
                logger.exception("Error in session cleanup loop")

    def start(self) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def shutdown(self) -> None:
        """Stop the cleanup loop and detach every attachment.  tmux sessions survive."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None
        for session in list(self._sessions.values()):
            try:
                await session.detach()
            except Exception:
                logger.exception("Error detaching %s during shutdown", session.id)
        logger.info("Terminal session pool shut down")
