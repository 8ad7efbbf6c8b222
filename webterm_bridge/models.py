"""Pydantic models shared between the pool, REST routes and the WebSocket protocol."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Terminal session state
# ---------------------------------------------------------------------------

class SessionState(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    DETACHED = "detached"
    KILLED = "killed"
    EXITED = "exited"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.KILLED, SessionState.EXITED, SessionState.ERROR)


class TerminalSize(BaseModel):
    cols: int = Field(default=80, ge=1, le=1000)
    rows: int = Field(default=24, ge=1, le=1000)


class SessionOptions(BaseModel):
    """How to start a terminal session."""
    cwd: str = ""
    cols: Optional[int] = Field(default=None, ge=1, le=1000)
    rows: Optional[int] = Field(default=None, ge=1, le=1000)
    env: dict[str, str] = {}
    assistant_bound: bool = False


@dataclass
class OutputEntry:
    timestamp: datetime
    data: str


@dataclass
class SessionEvent:
    """Delivered to pool/session subscribers."""
    kind: Literal["output", "state"]
    session_id: str
    timestamp: datetime
    data: str = ""
    state: Optional[SessionState] = None


class StartResult(BaseModel):
    session_id: str
    pid: Optional[int] = None
    state: SessionState
    created_at: datetime
    reconnect: bool = False


class SessionResult(StartResult):
    """Outcome of ``create_or_attach`` and friends."""
    reused: bool = False
    logical_name: Optional[str] = None
    sequence: Optional[int] = None


class SessionStatus(BaseModel):
    session_id: str
    state: SessionState
    pid: Optional[int] = None
    created_at: datetime
    last_activity: datetime
    uptime_s: float
    size: TerminalSize
    cwd: str = ""
    buffer_size: int = 0
    assistant_bound: bool = False


class AvailableSession(BaseModel):
    session_id: str
    created: Optional[datetime] = None
    attached: bool = False
    active_in_pool: bool = False
    state: Optional[SessionState] = None


class OutputChunk(BaseModel):
    timestamp: datetime
    data: str


# ---------------------------------------------------------------------------
# WebSocket protocol
# ---------------------------------------------------------------------------

class WSEventType(str, Enum):
    CONNECTED = "connected"
    SESSION_CREATED = "session-created"
    SESSION_DELETED = "session-deleted"
    SESSION_SWITCHED = "session-switched"
    SESSION_ATTACHED = "session-attached"
    SESSION_DETACHED = "session-detached"
    TERMINAL_OUTPUT = "terminal-output"
    TERMINAL_SCROLL_RESULT = "terminal-scroll-result"
    ROOM_STATUS = "room-status"
    NOTIFICATION = "notification"
    ACK = "ack"
    ERROR = "error"
    PONG = "pong"


class WSEvent(BaseModel):
    """WebSocket event envelope."""
    type: WSEventType
    session_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = {}


class IntentType(str, Enum):
    CREATE_SESSION = "create-session"
    DELETE_SESSION = "delete-session"
    SWITCH_SESSION = "switch-session"
    ATTACH_SESSION = "attach-session"
    DETACH_SESSION = "detach-session"
    JOIN = "join"
    LEAVE = "leave"
    WRITE = "write"
    RESIZE = "resize"
    SCROLL = "scroll"
    GO_TO_BOTTOM = "go-to-bottom"
    PING = "ping"


class Intent(BaseModel):
    """Inbound client message."""
    type: IntentType
    id: Optional[str] = None
    data: dict[str, Any] = {}


class CreateSessionIntent(BaseModel):
    logicalName: Optional[str] = None
    sessionName: Optional[str] = None
    workingDir: str = ""
    cols: int = Field(default=80, ge=1, le=1000)
    rows: int = Field(default=24, ge=1, le=1000)


class SessionNameIntent(BaseModel):
    sessionName: str = Field(..., min_length=1)


class AttachSessionIntent(SessionNameIntent):
    cols: int = Field(default=80, ge=1, le=1000)
    rows: int = Field(default=24, ge=1, le=1000)


class SwitchSessionIntent(SessionNameIntent):
    currentSessionName: Optional[str] = None
    cols: int = Field(default=80, ge=1, le=1000)
    rows: int = Field(default=24, ge=1, le=1000)


class LeaveIntent(BaseModel):
    sessionName: Optional[str] = None


class WriteIntent(BaseModel):
    sessionId: str = Field(..., min_length=1)
    data: str = Field(..., max_length=1_000_000)


class ResizeIntent(BaseModel):
    sessionId: str = Field(..., min_length=1)
    cols: int = Field(..., ge=1, le=1000)
    rows: int = Field(..., ge=1, le=1000)


class ScrollIntent(BaseModel):
    sessionId: str = Field(..., min_length=1)
    direction: Literal["up", "down"]
    mode: Union[Literal["line", "page", "halfpage"], int] = "line"


class GoToBottomIntent(BaseModel):
    sessionId: str = Field(..., min_length=1)
