"""FastAPI dependencies for dependency injection."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, WebSocket, WebSocketException, status

from marketbrewer.kalshi.forwarder import KalshiForwarder
from marketbrewer.kalshi.ws import KalshiWSClient


def get_forwarder(request: Request) -> KalshiForwarder:
    """Get the KalshiForwarder from app.state (set during lifespan)."""
    forwarder: KalshiForwarder | None = getattr(request.app.state, "forwarder", None)
    if forwarder is None:
        raise HTTPException(status_code=503, detail="Kalshi forwarder not initialised")
    return forwarder


def get_kalshi_ws(websocket: WebSocket) -> KalshiWSClient:
    """Get the shared Kalshi WebSocket client from app.state (set during lifespan)."""
    kalshi_ws: KalshiWSClient | None = getattr(websocket.app.state, "kalshi_ws", None)
    if kalshi_ws is None:
        raise WebSocketException(
            code=status.WS_1011_INTERNAL_ERROR, reason="Kalshi stream not initialised"
        )
    return kalshi_ws


# Annotated dependencies for use in route handlers
ForwarderDep = Annotated[KalshiForwarder, Depends(get_forwarder)]
KalshiWSDep = Annotated[KalshiWSClient, Depends(get_kalshi_ws)]
