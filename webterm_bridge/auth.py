"""Access guard — bearer token for REST, query token for the WebSocket."""

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Request, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import BridgeConfig

_security = HTTPBearer(auto_error=False)

# Close code sent to WebSocket clients with a bad token
WS_UNAUTHORIZED = 4001


def get_config(request: Request) -> BridgeConfig:
    return request.app.state.config


def token_matches(config: BridgeConfig, presented: str | None) -> bool:
    """True when auth is disabled or ``presented`` equals the configured token."""
    if not config.bearer_token:
        return True
    if not presented:
        return False
    return hmac.compare_digest(presented.encode(), config.bearer_token.encode())


async def verify_token(
    creds: HTTPAuthorizationCredentials | None = Depends(_security),
    config: BridgeConfig = Depends(get_config),
) -> str:
    """Validate the bearer token.  Returns the token on success."""
    presented = creds.credentials if creds is not None else None
    if not token_matches(config, presented):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing bearer token",
        )
    return presented or ""


async def authorize_websocket(websocket: WebSocket, token: str) -> bool:
    """Close the socket with 4001 unless ``token`` is acceptable."""
    if token_matches(websocket.app.state.config, token):
        return True
    await websocket.close(code=WS_UNAUTHORIZED, reason="Unauthorized")
    return False
