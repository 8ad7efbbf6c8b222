"""Error taxonomy shared by the pool, sessions, adapter and transports.

Every error carries a stable ``code`` (sent to WebSocket clients) and the
HTTP status the REST layer maps it to.
"""

from __future__ import annotations

from typing import Any, Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""

    code = "bridge_error"
    http_status = 500

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class SessionCreateFailed(BridgeError):
    """Spawning or attaching the PTY process failed."""

    code = "session_create_failed"
    http_status = 500


class SessionNotFound(BridgeError):
    code = "session_not_found"
    http_status = 404


class TerminalNotActive(BridgeError):
    """Write/resize on a session that is not in the ``active`` state."""

    code = "terminal_not_active"
    http_status = 409


class SystemOverload(BridgeError):
    code = "system_overload"
    http_status = 503


class MultiplexerCommandFailed(BridgeError):
    """A tmux invocation exited non-zero.  Keeps the command output for diagnostics."""

    code = "multiplexer_command_failed"
    http_status = 502

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, details=stderr.strip() or None)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr


class InvalidSessionName(BridgeError):
    code = "invalid_session_name"
    http_status = 400


class ReservedSession(BridgeError):
    """Operation targeted the reserved infrastructure session."""

    code = "reserved_session"
    http_status = 403


class InvalidIntent(BridgeError):
    """Malformed or unknown client message."""

    code = "invalid_intent"
    http_status = 400


class IntentTimeout(BridgeError):
    code = "intent_timeout"
    http_status = 504
