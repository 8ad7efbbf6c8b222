"""Session REST endpoints — inspection and control of terminal sessions."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..auth import verify_token
from ..errors import BridgeError
from ..models import AvailableSession, OutputChunk, WSEventType

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _pool(request: Request):
    return request.app.state.pool


def _http_error(exc: BridgeError) -> HTTPException:
    detail = exc.message if not exc.details else f"{exc.message}: {exc.details}"
    return HTTPException(exc.http_status, detail)


def _check_managed(request: Request, name: str) -> None:
    config = request.app.state.config
    if name == config.base_session_name:
        raise HTTPException(status.HTTP_403_FORBIDDEN, f"Session '{name}' is reserved")
    if not request.app.state.naming.is_managed(name):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid session name format")


# ---------------------------------------------------------------------------
# List / Detail
# ---------------------------------------------------------------------------

@router.get("", response_model=list[AvailableSession])
async def list_sessions(
    pool=Depends(_pool),
    _token: str = Depends(verify_token),
):
    """List sessions known to the pool or present in tmux."""
    return await pool.list_available()


@router.get("/{name}")
async def get_session(
    name: str,
    pool=Depends(_pool),
    _token: str = Depends(verify_token),
):
    """Status of one session."""
    info = await pool.status(name)
    if info is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"Session '{name}' not found")
    return info


@router.get("/{name}/output", response_model=list[OutputChunk])
async def get_output(
    name: str,
    lines: int = Query(default=100, ge=1, le=10_000),
    pool=Depends(_pool),
    _token: str = Depends(verify_token),
):
    """Most recent buffered output chunks."""
    try:
        entries = pool.recent_output(name, lines)
    except BridgeError as exc:
        raise _http_error(exc) from exc
    return [OutputChunk(timestamp=e.timestamp, data=e.data) for e in entries]


# ---------------------------------------------------------------------------
# Control
# ---------------------------------------------------------------------------

@router.post("/{name}/restart", status_code=status.HTTP_202_ACCEPTED)
async def restart_session(
    name: str,
    request: Request,
    pool=Depends(_pool),
    _token: str = Depends(verify_token),
):
    """Kill the attachment and the tmux session so the next attach starts fresh."""
    _check_managed(request, name)
    await pool.force_restart(name)
    request.app.state.connections.broadcast(name, WSEventType.NOTIFICATION, {
        "type": "session_restarted",
        "message": "The session was restarted",
    })
    return {"status": "restarted", "session": name}


@router.delete("/{name}", status_code=status.HTTP_200_OK)
async def delete_session(
    name: str,
    request: Request,
    pool=Depends(_pool),
    _token: str = Depends(verify_token),
):
    """Kill the session and its tmux session."""
    _check_managed(request, name)
    tmux = request.app.state.tmux
    try:
        if name in pool:
            await pool.destroy(name)
        elif not await tmux.kill_session(name):
            raise HTTPException(status.HTTP_502_BAD_GATEWAY, "Failed to kill session")
    except BridgeError as exc:
        raise _http_error(exc) from exc
    request.app.state.connections.broadcast_all(
        WSEventType.SESSION_DELETED, {"sessionName": name, "success": True}, session_name=name,
    )
    return {"status": "killed", "session": name}
