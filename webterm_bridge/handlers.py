"""Intent dispatcher — turns client messages into pool and room operations.

Every intent gets exactly one answer on the sender's connection: an
``ack`` carrying the handler's result, or an ``error`` built from the
raised :class:`BridgeError`.  ``ping`` is answered by ``pong``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from .config import BridgeConfig
from .connections import ConnectionManager
from .errors import (
    BridgeError,
    IntentTimeout,
    InvalidIntent,
    InvalidSessionName,
    MultiplexerCommandFailed,
    ReservedSession,
    SessionCreateFailed,
    SessionNotFound,
)
from .models import (
    AttachSessionIntent,
    CreateSessionIntent,
    GoToBottomIntent,
    Intent,
    IntentType,
    LeaveIntent,
    ResizeIntent,
    ScrollIntent,
    SessionNameIntent,
    SessionOptions,
    SwitchSessionIntent,
    WriteIntent,
    WSEventType,
    utcnow,
)
from .naming import SessionNaming
from .pool import TerminalSessionPool
from .projects import DirectoryProjectResolver
from .scroll import ScrollBridge
from .tmux import TmuxAdapter

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]]


class IntentDispatcher:
    def __init__(
        self,
        pool: TerminalSessionPool,
        naming: SessionNaming,
        tmux: TmuxAdapter,
        connections: ConnectionManager,
        scroll: ScrollBridge,
        projects: DirectoryProjectResolver,
        config: BridgeConfig,
    ) -> None:
        self._pool = pool
        self._naming = naming
        self._tmux = tmux
        self._connections = connections
        self._scroll = scroll
        self._projects = projects
        self._config = config
        self._inflight: set[asyncio.Task] = set()
        self._handlers: dict[IntentType, Handler] = {
            IntentType.CREATE_SESSION: self.create_session,
            IntentType.DELETE_SESSION: self.delete_session,
            IntentType.SWITCH_SESSION: self.switch_session,
            IntentType.ATTACH_SESSION: self.attach_session,
            IntentType.DETACH_SESSION: self.detach_session,
            IntentType.JOIN: self.join,
            IntentType.LEAVE: self.leave,
            IntentType.WRITE: self.write,
            IntentType.RESIZE: self.resize,
            IntentType.SCROLL: self.scroll,
            IntentType.GO_TO_BOTTOM: self.go_to_bottom,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def dispatch(self, connection_id: str, message: dict[str, Any]) -> None:
        try:
            intent = Intent.model_validate(message)
        except ValidationError as exc:
            self._send_error(connection_id, InvalidIntent("Invalid message", details=_summarize(exc)))
            return

        if intent.type == IntentType.PING:
            self._connections.send(connection_id, WSEventType.PONG, {"id": intent.id} if intent.id else {})
            return

        handler = self._handlers[intent.type]
        session_name = intent.data.get("sessionName") or intent.data.get("sessionId")
        if not isinstance(session_name, str):
            session_name = None
        task = asyncio.ensure_future(handler(connection_id, intent.data))
        self._inflight.add(task)
        task.add_done_callback(self._finish_late)
        try:
            result = await asyncio.wait_for(asyncio.shield(task), self._config.intent_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Intent %s from %s still running after %.0fs", intent.type.value, connection_id,
                           self._config.intent_timeout_s)
            self._send_error(connection_id, IntentTimeout(
                f"{intent.type.value} did not complete in time",
                details="The operation continues in the background",
            ), intent, session_name)
            return
        except ValidationError as exc:
            self._send_error(connection_id, InvalidIntent(
                f"Invalid payload for {intent.type.value}", details=_summarize(exc),
            ), intent, session_name)
            return
        except BridgeError as exc:
            logger.warning("Intent %s from %s failed: %s", intent.type.value, connection_id, exc.message)
            self._send_error(connection_id, exc, intent, session_name)
            return
        except Exception as exc:
            logger.exception("Unhandled error in %s intent", intent.type.value)
            self._send_error(connection_id, BridgeError("Internal server error", details=str(exc)), intent,
                             session_name)
            return

        ack: dict[str, Any] = {"intent": intent.type.value, "result": result}
        if intent.id:
            ack["id"] = intent.id
        self._connections.send(connection_id, WSEventType.ACK, ack, session_name=session_name)

    def _finish_late(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, (BridgeError, ValidationError)):
            logger.debug("Intent task ended with %r", exc)

    def _send_error(
        self,
        connection_id: str,
        error: BridgeError,
        intent: Intent | None = None,
        session_name: str | None = None,
    ) -> None:
        payload = error.to_payload()
        if intent is not None:
            payload["intent"] = intent.type.value
            if intent.id:
                payload["id"] = intent.id
        self._connections.send(connection_id, WSEventType.ERROR, payload, session_name=session_name)

    async def cancel_inflight(self) -> None:
        for task in list(self._inflight):
            task.cancel()
        await asyncio.gather(*self._inflight, return_exceptions=True)

    # ------------------------------------------------------------------
    # Name checks
    # ------------------------------------------------------------------

    def _check_name(self, name: str, allow_reserved: bool = False) -> str:
        if not allow_reserved and name == self._config.base_session_name:
            raise ReservedSession(f"Cannot use reserved session {name}")
        if not self._naming.is_managed(name):
            raise InvalidSessionName("Invalid session name format", details=name)
        return name

    async def _ensure_member(self, connection_id: str, name: str) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None and conn.current_room != name:
            await self._connections.join(connection_id, name, replay=False)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def create_session(self, connection_id: str, data: dict[str, Any]) -> dict[str, Any]:
        body = CreateSessionIntent.model_validate(data)
        if body.sessionName:
            name = self._check_name(body.sessionName)
            ident = self._naming.parse(name)
        elif body.logicalName:
            ident = await self._naming.allocate(body.logicalName, known_names=self._pool.session_ids())
            name = ident.composed_name
        else:
            raise InvalidSessionName("Project name or session name required")

        logical = ident.logical_name if ident else ""
        if await self._tmux.session_exists(name):
            raise SessionCreateFailed(f"Session {name} already exists")

        cwd = self._projects.working_dir(logical, body.workingDir)
        result = await self._pool.create_or_attach(
            name, SessionOptions(cwd=cwd, cols=body.cols, rows=body.rows),
        )
        await self._connections.join(connection_id, name, replay=False)

        event = {
            "sessionName": name,
            "logicalName": logical or "direct",
            "sequenceNumber": ident.sequence if ident else None,
            "pid": result.pid,
            "timestamp": utcnow().isoformat(),
        }
        logger.info("Session %s created by %s", name, connection_id)
        self._connections.broadcast_all(WSEventType.SESSION_CREATED, event, session_name=name)
        return event

    async def delete_session(self, connection_id: str, data: dict[str, Any]) -> dict[str, Any]:
        name = self._check_name(SessionNameIntent.model_validate(data).sessionName)
        if name in self._pool:
            await self._pool.destroy(name)
        elif await self._tmux.session_exists(name):
            if not await self._tmux.kill_session(name):
                raise MultiplexerCommandFailed(
                    "Failed to delete session", stderr="Tmux session deletion returned false",
                )
        else:
            logger.info("Delete requested for %s, which no longer exists", name)

        logger.info("Session %s deleted by %s", name, connection_id)
        event = {"sessionName": name, "success": True}
        self._connections.broadcast_all(WSEventType.SESSION_DELETED, event, session_name=name)
        return event

    async def switch_session(self, connection_id: str, data: dict[str, Any]) -> dict[str, Any]:
        body = SwitchSessionIntent.model_validate(data)
        name = self._check_name(body.sessionName, allow_reserved=True)
        if not await self._tmux.session_exists(name):
            raise SessionNotFound("Session does not exist", details=name)

        result = await self._pool.create_or_attach(
            name,
            SessionOptions(cols=body.cols, rows=body.rows),
            replay_sink=self._connections.replay_sink(connection_id, name),
        )
        await self._connections.join(connection_id, name, replay=not result.reconnect)

        current = body.currentSessionName
        if current and current != name and current not in self._pool:
            # An external client (ttyd and the like) is attached to the old session
            if not await self._tmux.switch_client(current, name):
                logger.warning("Could not switch external client from %s to %s", current, name)

        event = {"sessionName": name, "currentSessionName": current, "success": True}
        self._connections.broadcast_all(WSEventType.SESSION_SWITCHED, event, session_name=name)
        return event

    async def attach_session(self, connection_id: str, data: dict[str, Any]) -> dict[str, Any]:
        body = AttachSessionIntent.model_validate(data)
        name = self._check_name(body.sessionName)
        result = await self._pool.create_or_attach(
            name,
            SessionOptions(cols=body.cols, rows=body.rows),
            replay_sink=self._connections.replay_sink(connection_id, name),
        )
        await self._connections.join(connection_id, name, replay=not result.reconnect)
        event = {
            "sessionName": name,
            "pid": result.pid,
            "reconnect": result.reconnect,
            "reused": result.reused,
        }
        self._connections.send(connection_id, WSEventType.SESSION_ATTACHED, event, session_name=name)
        return event

    async def detach_session(self, connection_id: str, data: dict[str, Any]) -> dict[str, Any]:
        name = self._check_name(SessionNameIntent.model_validate(data).sessionName, allow_reserved=True)
        detached = await self._pool.detach(name)
        await self._connections.leave(connection_id, name)
        return {"sessionName": name, "detached": detached}

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def join(self, connection_id: str, data: dict[str, Any]) -> dict[str, Any]:
        name = self._check_name(SessionNameIntent.model_validate(data).sessionName, allow_reserved=True)
        status = await self._connections.join(connection_id, name)
        return {"sessionName": name, "status": status}

    async def leave(self, connection_id: str, data: dict[str, Any]) -> dict[str, Any]:
        body = LeaveIntent.model_validate(data)
        await self._connections.leave(connection_id, body.sessionName)
        return {"sessionName": body.sessionName}

    # ------------------------------------------------------------------
    # Terminal I/O
    # ------------------------------------------------------------------

    async def write(self, connection_id: str, data: dict[str, Any]) -> dict[str, Any]:
        body = WriteIntent.model_validate(data)
        name = self._check_name(body.sessionId)
        await self._ensure_member(connection_id, name)
        self._pool.write(name, body.data)
        return {"sessionId": name, "bytes": len(body.data)}

    async def resize(self, connection_id: str, data: dict[str, Any]) -> dict[str, Any]:
        body = ResizeIntent.model_validate(data)
        name = self._check_name(body.sessionId, allow_reserved=True)
        await self._ensure_member(connection_id, name)
        size = self._pool.resize(name, body.cols, body.rows)
        return {"sessionId": name, **size.model_dump()}

    async def scroll(self, connection_id: str, data: dict[str, Any]) -> dict[str, Any]:
        body = ScrollIntent.model_validate(data)
        name = self._check_name(body.sessionId, allow_reserved=True)
        if not await self._tmux.session_exists(name):
            raise SessionNotFound("Session not found", details=f"Terminal session '{name}' does not exist")
        success = await self._scroll.scroll(name, body.direction, body.mode)
        event = {
            "success": success,
            "sessionId": name,
            "direction": body.direction,
            "mode": body.mode,
            "message": (
                f"Scrolled {body.direction} in {body.mode} mode" if success
                else "Failed to execute scroll command"
            ),
        }
        self._connections.send(connection_id, WSEventType.TERMINAL_SCROLL_RESULT, event, session_name=name)
        return {"success": success}

    async def go_to_bottom(self, connection_id: str, data: dict[str, Any]) -> dict[str, Any]:
        name = self._check_name(GoToBottomIntent.model_validate(data).sessionId, allow_reserved=True)
        if not await self._tmux.session_exists(name):
            raise SessionNotFound("Session not found", details=f"Terminal session '{name}' does not exist")
        success = await self._scroll.go_to_bottom_and_exit(name)
        event = {
            "success": success,
            "sessionId": name,
            "action": "go-to-bottom-and-exit",
            "message": (
                "Jumped to bottom and exited copy mode" if success
                else "Failed to execute go to bottom and exit command"
            ),
        }
        self._connections.send(connection_id, WSEventType.TERMINAL_SCROLL_RESULT, event, session_name=name)
        return {"success": success}


def _summarize(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'message'}: {err['msg']}" for err in exc.errors()
    )
