"""Browser WebSocket relay for real-time Kalshi updates.

Protocol (JSON text frames):
- client → server: ``{"cmd": "ping"}``, ``{"cmd": "subscribe", "market_tickers": [...]}``,
  ``{"cmd": "unsubscribe", "market_tickers": [...]}``; an optional ``"channels"``
  list selects ``ticker`` (default) and/or ``orderbook_delta``.
- server → client: ``status``, ``pong``, ``subscribed``, ``unsubscribed``, ``error``,
  and relayed ``ticker`` / ``orderbook_*`` / ``fill`` events as ``{"type", "data"}``.

Market events are only delivered for tickers the session subscribed to; fills
(the account's own trades) go to every session.
"""

from __future__ import annotations

import asyncio
from typing import Any

import orjson
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from marketbrewer.core.dependencies import KalshiWSDep
from marketbrewer.core.logging import get_logger
from marketbrewer.kalshi.ws import MARKET_CHANNELS, TICKER_CHANNEL, KalshiWSClient

logger = get_logger(__name__)

router = APIRouter()

SESSION_QUEUE_SIZE = 1000


class StreamSession:
    """One browser connection: its subscriptions and outbound queue."""

    def __init__(self, kalshi_ws: KalshiWSClient) -> None:
        self.kalshi_ws = kalshi_ws
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=SESSION_QUEUE_SIZE)
        self.subscriptions: dict[str, set[str]] = {channel: set() for channel in MARKET_CHANNELS}

    def push(self, event: dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Stream session queue full, dropping event", type=event.get("type"))

    def on_kalshi_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type in ("status", "fill"):
            self.push(event)
            return
        channel = TICKER_CHANNEL if event_type == "ticker" else "orderbook_delta"
        ticker = event.get("data", {}).get("market_ticker")
        if ticker in self.subscriptions[channel]:
            self.push(event)

    async def handle(self, raw: str) -> None:
        try:
            message = orjson.loads(raw)
        except orjson.JSONDecodeError:
            self.push({"type": "error", "error": "Invalid JSON message"})
            return
        if not isinstance(message, dict):
            self.push({"type": "error", "error": "Invalid JSON message"})
            return

        cmd = message.get("cmd")
        if cmd == "ping":
            self.push({"type": "pong"})
            return
        if cmd not in ("subscribe", "unsubscribe"):
            self.push({"type": "error", "error": f"Unknown command: {cmd}"})
            return

        tickers = message.get("market_tickers")
        channels = message.get("channels") or [TICKER_CHANNEL]
        if (
            not isinstance(tickers, list)
            or not all(isinstance(t, str) for t in tickers)
            or not all(c in MARKET_CHANNELS for c in channels)
        ):
            self.push({"type": "error", "error": f"Invalid {cmd} request"})
            return

        for channel in channels:
            held = self.subscriptions[channel]
            if cmd == "subscribe":
                fresh = [t for t in dict.fromkeys(tickers) if t not in held]
                held.update(fresh)
                if fresh:
                    await self.kalshi_ws.subscribe(fresh, channel)
            else:
                owned = [t for t in dict.fromkeys(tickers) if t in held]
                held.difference_update(owned)
                if owned:
                    await self.kalshi_ws.unsubscribe(owned, channel)
        self.push({"type": f"{cmd}d", "market_tickers": tickers, "channels": channels})

    async def release(self) -> None:
        for channel, held in self.subscriptions.items():
            if held:
                await self.kalshi_ws.unsubscribe(sorted(held), channel)
            held.clear()


async def _pump(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        event = await queue.get()
        await websocket.send_text(orjson.dumps(event).decode())


@router.websocket("/ws")
async def market_stream(websocket: WebSocket, kalshi_ws: KalshiWSDep) -> None:
    await websocket.accept()
    session = StreamSession(kalshi_ws)
    kalshi_ws.add_listener(session.on_kalshi_event)
    session.push({"type": "status", "connected": kalshi_ws.is_connected})
    sender = asyncio.create_task(_pump(websocket, session.queue))

    try:
        while True:
            await session.handle(await websocket.receive_text())
    except WebSocketDisconnect:
        logger.debug("Stream client disconnected")
    finally:
        kalshi_ws.remove_listener(session.on_kalshi_event)
        sender.cancel()
        await session.release()
