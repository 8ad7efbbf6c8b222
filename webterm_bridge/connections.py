"""Connection and room management for WebSocket clients.

A room groups the connections interested in one terminal session (the
room key is the session name).  A connection is in at most one room.
Each connection has its own outbound queue drained by a sender task, so
a slow client never blocks a broadcast and events reach each client in
the order they were produced.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from fastapi import WebSocket

from .models import SessionEvent, SessionState, WSEvent, WSEventType, utcnow
from .pool import TerminalSessionPool

logger = logging.getLogger(__name__)


class RoomObserver(Protocol):
    """Collaborators (file watchers and the like) tied to room lifetime."""

    def room_created(self, room_key: str) -> None: ...

    def room_emptied(self, room_key: str) -> None: ...


@dataclass
class ConnectionMetadata:
    remote_addr: str = ""
    user_agent: str = ""
    connected_at: datetime = field(default_factory=utcnow)


@dataclass
class Connection:
    id: str
    websocket: WebSocket
    metadata: ConnectionMetadata
    current_room: Optional[str] = None
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    sender: Optional[asyncio.Task] = None
    closed: bool = False


@dataclass
class Room:
    key: str
    members: set[str] = field(default_factory=set)
    subscription: Optional[int] = None


class ConnectionManager:
    """Owns connections and rooms; fans session output out to room members."""

    def __init__(self, pool: TerminalSessionPool, observers: list[RoomObserver] | None = None) -> None:
        self._pool = pool
        self._observers = list(observers or [])
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, Room] = {}
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect(self, ws: WebSocket, metadata: ConnectionMetadata | None = None) -> Connection:
        await ws.accept()
        conn = Connection(id=uuid.uuid4().hex, websocket=ws, metadata=metadata or ConnectionMetadata())
        conn.sender = asyncio.create_task(self._sender(conn))
        async with self._lock:
            self._connections[conn.id] = conn
        logger.info(
            "WebSocket client %s connected from %s (total: %d)",
            conn.id, conn.metadata.remote_addr or "?", len(self._connections),
        )
        self.send(conn.id, WSEventType.CONNECTED, {
            "connectionId": conn.id,
            "serverVersion": "0.1.0",
        })
        return conn

    async def disconnect(self, connection_id: str, reason: str = "") -> None:
        conn = self._connections.get(connection_id)
        if conn is None:
            return
        if conn.current_room:
            await self.leave(connection_id, conn.current_room)
        async with self._lock:
            self._connections.pop(connection_id, None)
        conn.closed = True
        if conn.sender is not None and conn.sender is not asyncio.current_task():
            conn.sender.cancel()
        duration = (utcnow() - conn.metadata.connected_at).total_seconds()
        logger.info(
            "WebSocket client %s disconnected (%s, %.0fs; total: %d)",
            connection_id, reason or "closed", duration, len(self._connections),
        )

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    async def _sender(self, conn: Connection) -> None:
        while True:
            payload = await conn.queue.get()
            try:
                await conn.websocket.send_text(payload)
            except Exception:
                logger.debug("Send to %s failed; dropping connection", conn.id, exc_info=True)
                self._spawn(self.disconnect(conn.id, "send failed"))
                return

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def send(
        self,
        connection_id: str,
        event_type: WSEventType,
        data: dict[str, Any] | None = None,
        session_name: str | None = None,
    ) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None or conn.closed:
            return False
        event = WSEvent(type=event_type, session_name=session_name, data=data or {})
        conn.queue.put_nowait(event.model_dump_json())
        return True

    def broadcast(
        self,
        room_key: str,
        event_type: WSEventType,
        data: dict[str, Any] | None = None,
        exclude: str | None = None,
    ) -> int:
        """Queue an event for every member of ``room_key``.  Returns the member count reached."""
        room = self._rooms.get(room_key)
        if room is None:
            return 0
        payload = WSEvent(type=event_type, session_name=room_key, data=data or {}).model_dump_json()
        sent = 0
        for member in list(room.members):
            if member == exclude:
                continue
            conn = self._connections.get(member)
            if conn is None or conn.closed:
                continue
            conn.queue.put_nowait(payload)
            sent += 1
        return sent

    def broadcast_all(
        self,
        event_type: WSEventType,
        data: dict[str, Any] | None = None,
        session_name: str | None = None,
    ) -> None:
        payload = WSEvent(type=event_type, session_name=session_name, data=data or {}).model_dump_json()
        for conn in list(self._connections.values()):
            if not conn.closed:
                conn.queue.put_nowait(payload)

    def replay_sink(self, connection_id: str, session_name: str):
        """An async sink that writes replay frames to one connection as terminal output."""
        async def sink(data: str) -> None:
            self.send(connection_id, WSEventType.TERMINAL_OUTPUT, {
                "sessionId": session_name,
                "data": data,
                "timestamp": utcnow().isoformat(),
                "replay": True,
            }, session_name=session_name)
        return sink

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    def room_members(self, room_key: str) -> set[str]:
        room = self._rooms.get(room_key)
        return set(room.members) if room else set()

    def has_room(self, room_key: str) -> bool:
        return room_key in self._rooms

    async def join(self, connection_id: str, room_key: str, replay: bool = True) -> str:
        """Put a connection in ``room_key``.  Returns ``"connected"`` or ``"already-connected"``."""
        conn = self._connections.get(connection_id)
        if conn is None:
            raise KeyError(connection_id)
        if conn.current_room == room_key and connection_id in self.room_members(room_key):
            self.send(connection_id, WSEventType.ROOM_STATUS, {
                "sessionName": room_key,
                "status": "already-connected",
            }, session_name=room_key)
            return "already-connected"

        if conn.current_room:
            await self.leave(connection_id, conn.current_room)

        created = False
        async with self._lock:
            room = self._rooms.get(room_key)
            if room is None:
                room = Room(key=room_key)
                room.subscription = self._pool.subscribe(room_key, self._room_listener(room_key))
                self._rooms[room_key] = room
                created = True
            room.members.add(connection_id)
            conn.current_room = room_key

        logger.info("Connection %s joined room %s (%d members)", connection_id, room_key, len(room.members))
        if created:
            self._notify("room_created", room_key)

        self.send(connection_id, WSEventType.ROOM_STATUS, {
            "sessionName": room_key,
            "status": "connected",
            "active": self._pool.is_active(room_key),
        }, session_name=room_key)
        self.broadcast(room_key, WSEventType.NOTIFICATION, {
            "type": "user_joined",
            "message": "A user joined the session",
        }, exclude=connection_id)

        if replay and self._pool.is_active(room_key):
            self._spawn(self._pool.replay_to(room_key, self.replay_sink(connection_id, room_key)))
        return "connected"

    async def leave(self, connection_id: str, room_key: str | None = None) -> None:
        conn = self._connections.get(connection_id)
        if conn is None:
            return
        room_key = room_key or conn.current_room
        if not room_key:
            return

        emptied = False
        async with self._lock:
            room = self._rooms.get(room_key)
            if room is not None and connection_id in room.members:
                room.members.discard(connection_id)
                if not room.members:
                    del self._rooms[room_key]
                    if room.subscription is not None:
                        self._pool.unsubscribe(room.subscription)
                    emptied = True
            if conn.current_room == room_key:
                conn.current_room = None

        logger.info("Connection %s left room %s", connection_id, room_key)
        if emptied:
            logger.info("Room %s is empty; releasing its resources", room_key)
            self._notify("room_emptied", room_key)
        else:
            self.broadcast(room_key, WSEventType.NOTIFICATION, {
                "type": "user_left",
                "message": "A user left the session",
            })

    def _room_listener(self, room_key: str):
        def listener(event: SessionEvent) -> None:
            if event.kind == "output":
                self.broadcast(room_key, WSEventType.TERMINAL_OUTPUT, {
                    "sessionId": event.session_id,
                    "data": event.data,
                    "timestamp": event.timestamp.isoformat(),
                })
            elif event.state in (SessionState.DETACHED, SessionState.EXITED, SessionState.KILLED):
                self.broadcast(room_key, WSEventType.SESSION_DETACHED, {
                    "sessionName": event.session_id,
                    "state": event.state.value,
                })
        return listener

    def _notify(self, hook: str, room_key: str) -> None:
        for observer in self._observers:
            try:
                getattr(observer, hook)(room_key)
            except Exception:
                logger.exception("Room observer %s failed for %s", hook, room_key)

    def stats(self) -> dict[str, Any]:
        return {
            "total_connections": len(self._connections),
            "active_rooms": len(self._rooms),
            "rooms": {key: len(room.members) for key, room in self._rooms.items()},
        }

    async def close_all(self) -> None:
        for connection_id in list(self._connections):
            await self.disconnect(connection_id, "server shutdown")
        for task in list(self._tasks):
            task.cancel()
