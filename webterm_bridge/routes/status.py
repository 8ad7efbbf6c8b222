"""Status endpoints — health check and runtime info."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..auth import verify_token

router = APIRouter(prefix="/api/status", tags=["status"])


@router.get("/health")
async def health():
    """Health check — no auth required."""
    return {"status": "ok", "service": "webterm-bridge"}


@router.get("/info")
async def bridge_info(
    request: Request,
    _token: str = Depends(verify_token),
):
    """Return pool and connection statistics."""
    state = request.app.state
    config = state.config
    return {
        "host": config.host,
        "port": config.port,
        "session_prefix": config.session_prefix,
        "sessions": {
            "active": len(state.pool),
            "max": state.pool.max_sessions,
        },
        "connections": state.connections.stats(),
    }
