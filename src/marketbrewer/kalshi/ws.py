"""Kalshi WebSocket client for real-time market data.

Holds one authenticated upstream connection and fans Kalshi events out to
local listeners (the browser sessions behind ``/ws``). The handshake is
signed with the same RSA-PSS scheme as REST calls, over ``GET`` and the
WebSocket path.

Pattern: connect, subscribe, listen, reconnect with exponential backoff.
Reconnection gives up after ``max_reconnect_attempts`` consecutive failures.

WebSocket URL: wss://api.elections.kalshi.com/trade-api/ws/v2
"""

from __future__ import annotations

import asyncio
import itertools
from collections import Counter
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from typing import Any
from urllib.parse import urlsplit

import orjson
import websockets
import websockets.exceptions
from websockets.asyncio.client import ClientConnection

from marketbrewer.config import Settings
from marketbrewer.core.logging import get_logger
from marketbrewer.kalshi.auth import Signer, make_auth_headers, unix_timestamp

logger = get_logger(__name__)

TICKER_CHANNEL = "ticker"
ORDERBOOK_CHANNEL = "orderbook_delta"
FILL_CHANNEL = "fill"
MARKET_CHANNELS = (TICKER_CHANNEL, ORDERBOOK_CHANNEL)

PING_INTERVAL = 30.0
RECONNECT_DELAY = 1.0
MAX_RECONNECT_ATTEMPTS = 5

# Subscription message ID counter
_id_counter = itertools.count(1)

Listener = Callable[[dict[str, Any]], None]
Connector = Callable[..., AbstractAsyncContextManager[ClientConnection]]


def to_relay_event(message: dict[str, Any]) -> dict[str, Any] | None:
    """Map a Kalshi message to the event sent to local listeners.

    Returns None for control messages (subscribed, pong, error) that are not relayed.
    """
    msg_type = message.get("type")
    if msg_type in ("ticker", "fill", "orderbook_snapshot", "orderbook_delta"):
        return {"type": msg_type, "data": message.get("msg", {})}
    return None


class KalshiWSClient:
    """Authenticated Kalshi WebSocket with reference-counted market subscriptions.

    Usage:
        client = KalshiWSClient(settings)
        client.add_listener(on_event)
        await client.start()
        await client.subscribe(["KXMENTION-26JAN29-AI"])
        ...
        await client.stop()
    """

    def __init__(
        self,
        settings: Settings,
        signer: Signer | None = None,
        connector: Connector = websockets.connect,
        clock: Callable[[], str] = unix_timestamp,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        ping_interval: float = PING_INTERVAL,
        reconnect_delay: float = RECONNECT_DELAY,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        self._url = settings.kalshi_ws_url
        self._path = urlsplit(self._url).path or "/trade-api/ws/v2"
        self._api_key_id = (
            settings.kalshi_api_key_id.get_secret_value() if settings.kalshi_api_key_id else None
        )
        self._signer = signer or Signer.from_settings(settings)
        self._connector = connector
        self._clock = clock
        self._sleep = sleep
        self._ping_interval = ping_interval
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_attempts = max_reconnect_attempts

        self._ws: ClientConnection | None = None
        self._ws_task: asyncio.Task[None] | None = None
        self._running = False
        self._reconnect_attempts = 0
        self._subscriptions: Counter[tuple[str, str]] = Counter()
        self._listeners: list[Listener] = []

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._running

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribed_tickers(self, channel: str = TICKER_CHANNEL) -> set[str]:
        return {ticker for ch, ticker in self._subscriptions if ch == channel}

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self) -> None:
        """Start the WebSocket loop in a background task."""
        if self._running:
            logger.warning("Kalshi WS already running")
            return
        self._running = True
        self._reconnect_attempts = 0
        self._ws_task = asyncio.create_task(self._ws_loop())
        logger.debug("Kalshi WS started")

    async def stop(self) -> None:
        """Stop the WebSocket loop and close the upstream connection."""
        self._running = False
        if self._ws:
            await self._ws.close()
            self._ws = None
        if self._ws_task:
            self._ws_task.cancel()
            try:
                await self._ws_task
            except asyncio.CancelledError:
                pass
            self._ws_task = None
        logger.debug("Kalshi WS stopped")

    async def subscribe(self, market_tickers: list[str], channel: str = TICKER_CHANNEL) -> None:
        """Take a reference on each ticker; only first references reach Kalshi."""
        new_tickers = []
        for ticker in dict.fromkeys(market_tickers):
            key = (channel, ticker)
            if self._subscriptions[key] == 0:
                new_tickers.append(ticker)
            self._subscriptions[key] += 1
        if self._ws and new_tickers:
            await self._send_cmd("subscribe", channel, new_tickers)

    async def unsubscribe(self, market_tickers: list[str], channel: str = TICKER_CHANNEL) -> None:
        """Drop a reference on each ticker; last references are unsubscribed upstream."""
        released = []
        for ticker in dict.fromkeys(market_tickers):
            key = (channel, ticker)
            if self._subscriptions[key] == 0:
                continue
            self._subscriptions[key] -= 1
            if self._subscriptions[key] == 0:
                del self._subscriptions[key]
                released.append(ticker)
        if self._ws and released:
            await self._send_cmd("unsubscribe", channel, released)

    def _emit(self, event: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning("Kalshi WS listener failed", error=str(e))

    def _auth_headers(self) -> dict[str, str] | None:
        """Signed handshake headers; None if credentials are configured but signing failed."""
        if not self._api_key_id:
            return {}
        timestamp = self._clock()
        signature = self._signer.sign("GET", self._path, timestamp)
        if signature is None:
            return None
        return make_auth_headers(self._api_key_id, signature, timestamp)

    async def _ws_loop(self) -> None:
        """Main WebSocket loop with bounded reconnection."""
        while self._running:
            try:
                await self._connect_and_listen()
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning("Kalshi WS connection closed", reason=str(e))
            except Exception as e:
                logger.error("Kalshi WS error", error=str(e))

            if not self._running:
                break
            if self._reconnect_attempts >= self._max_reconnect_attempts:
                logger.error("Kalshi WS max reconnection attempts reached")
                self._running = False
                break

            self._reconnect_attempts += 1
            delay = self._reconnect_delay * 2 ** (self._reconnect_attempts - 1)
            logger.info(
                "Kalshi WS reconnecting",
                attempt=self._reconnect_attempts,
                max_attempts=self._max_reconnect_attempts,
                delay=delay,
            )
            await self._sleep(delay)

    async def _connect_and_listen(self) -> None:
        """Connect with RSA-PSS auth, resubscribe, and relay messages until closed."""
        headers = self._auth_headers()
        if headers is None:
            raise ConnectionError("Failed to generate authentication signature")

        async with self._connector(self._url, additional_headers=headers) as ws:
            self._ws = ws
            self._reconnect_attempts = 0
            logger.info("Kalshi WS connected", subscribed=len(self._subscriptions))
            self._emit({"type": "status", "connected": True})

            ping_task = asyncio.create_task(self._ping_loop(ws))
            try:
                await self._resubscribe()
                async for message in ws:
                    self._handle_message(message)
            finally:
                ping_task.cancel()
                self._ws = None
                self._emit({"type": "status", "connected": False})

    async def _resubscribe(self) -> None:
        if self._api_key_id:
            await self._send_cmd("subscribe", FILL_CHANNEL, None)
        for channel in MARKET_CHANNELS:
            tickers = sorted(self.subscribed_tickers(channel))
            if tickers:
                await self._send_cmd("subscribe", channel, tickers)

    async def _ping_loop(self, ws: ClientConnection) -> None:
        while True:
            await asyncio.sleep(self._ping_interval)
            try:
                await ws.send(orjson.dumps({"id": next(_id_counter), "cmd": "ping"}).decode())
            except websockets.exceptions.ConnectionClosed:
                return

    async def _send_cmd(self, cmd: str, channel: str, tickers: list[str] | None) -> None:
        """Send a subscribe/unsubscribe command for one channel."""
        if not self._ws:
            return
        params: dict[str, Any] = {"channels": [channel]}
        if tickers is not None:
            params["market_tickers"] = tickers
        msg = orjson.dumps({"id": next(_id_counter), "cmd": cmd, "params": params})
        try:
            await self._ws.send(msg.decode())
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Kalshi WS {cmd} failed", channel=channel, error=str(e))
            return
        logger.debug(f"Kalshi WS {cmd}", channel=channel, count=len(tickers or []))

    def _handle_message(self, raw: str | bytes) -> None:
        try:
            message = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            logger.warning("Kalshi WS message parse error", error=str(e))
            return

        msg_type = message.get("type") if isinstance(message, dict) else None
        if msg_type == "error":
            logger.warning("Kalshi WS error message", msg=message.get("msg"))
            return
        if msg_type == "subscribed":
            logger.debug("Kalshi WS subscription confirmed", msg=message.get("msg"))
            return

        event = to_relay_event(message) if msg_type else None
        if event is None:
            if msg_type != "pong":
                logger.debug("Kalshi WS unhandled message", type=msg_type)
            return
        self._emit(event)
