"""Tests for the Kalshi WebSocket client."""

from __future__ import annotations

import asyncio
import base64
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import orjson
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from marketbrewer.kalshi.auth import HEADER_ACCESS_KEY, HEADER_SIGNATURE, HEADER_TIMESTAMP
from marketbrewer.kalshi.ws import (
    FILL_CHANNEL,
    ORDERBOOK_CHANNEL,
    TICKER_CHANNEL,
    KalshiWSClient,
    to_relay_event,
)

TS = "1700000000"

TICKER_MSG = {
    "type": "ticker",
    "sid": 1,
    "msg": {"market_ticker": "KXEARNINGSMENTIONAAPL-26JAN29-AI", "yes_bid": 41, "yes_ask": 43},
}
FILL_MSG = {
    "type": "fill",
    "sid": 2,
    "msg": {"trade_id": "t-1", "market_ticker": "KXEARNINGSMENTIONAAPL-26JAN29-AI", "count": 3},
}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class _Connection:
    """Scripted upstream socket: yields fed messages until finished or closed."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue[str | None] = asyncio.Queue()

    def feed(self, message: dict[str, Any] | str) -> None:
        raw = message if isinstance(message, str) else orjson.dumps(message).decode()
        self._incoming.put_nowait(raw)

    def finish(self) -> None:
        self._incoming.put_nowait(None)

    async def send(self, message: str) -> None:
        self.sent.append(orjson.loads(message))

    async def close(self) -> None:
        self.closed = True
        self.finish()

    def commands(self, cmd: str | None = None) -> list[dict[str, Any]]:
        return [m for m in self.sent if cmd is None or m["cmd"] == cmd]

    def __aiter__(self) -> _Connection:
        return self

    async def __anext__(self) -> str:
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


class _Connector:
    """Hands out prepared connections in order, then refuses."""

    def __init__(self, *connections: _Connection) -> None:
        self.connections = list(connections)
        self.calls: list[tuple[str, dict[str, str]]] = []

    def __call__(self, url: str, additional_headers: dict[str, str]) -> Any:
        self.calls.append((url, additional_headers))
        return self._open()

    @asynccontextmanager
    async def _open(self) -> AsyncIterator[_Connection]:
        if not self.connections:
            raise OSError("connection refused")
        yield self.connections.pop(0)


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture()
def sleeps() -> _Sleeps:
    return _Sleeps()


@pytest.fixture()
def make_client(make_settings, sleeps) -> Callable[..., KalshiWSClient]:
    def _make(connector: _Connector, **settings: Any) -> KalshiWSClient:
        return KalshiWSClient(
            make_settings(**settings),
            connector=connector,
            clock=lambda: TS,
            sleep=sleeps,
        )

    return _make


async def _run_until_done(client: KalshiWSClient) -> None:
    await client.start()
    assert client._ws_task is not None
    await asyncio.wait_for(client._ws_task, 2.0)


# ---------------------------------------------------------------------------
# Message mapping
# ---------------------------------------------------------------------------


class TestRelayEvent:
    @pytest.mark.parametrize(
        "msg_type", ["ticker", "fill", "orderbook_snapshot", "orderbook_delta"]
    )
    def test_relayed_types(self, msg_type: str) -> None:
        event = to_relay_event({"type": msg_type, "sid": 1, "msg": {"market_ticker": "X"}})

        assert event == {"type": msg_type, "data": {"market_ticker": "X"}}

    @pytest.mark.parametrize("msg_type", ["subscribed", "error", "pong", "unknown"])
    def test_control_messages_dropped(self, msg_type: str) -> None:
        assert to_relay_event({"type": msg_type, "msg": {}}) is None


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


class TestHandshake:
    async def test_signed_headers(self, make_client, key_file: Path, rsa_key) -> None:
        connection = _Connection()
        connection.finish()
        connector = _Connector(connection)
        client = make_client(
            connector, kalshi_api_key_id="key-1", kalshi_private_key_path=str(key_file)
        )

        await _run_until_done(client)

        url, headers = connector.calls[0]
        assert url == "wss://api.elections.kalshi.com/trade-api/ws/v2"
        assert headers[HEADER_ACCESS_KEY] == "key-1"
        assert headers[HEADER_TIMESTAMP] == TS
        rsa_key.public_key().verify(
            base64.b64decode(headers[HEADER_SIGNATURE]),
            f"{TS}GET/trade-api/ws/v2".encode(),
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.DIGEST_LENGTH),
            hashes.SHA256(),
        )

    async def test_custom_url_path_is_signed(self, make_client, key_file: Path, rsa_key) -> None:
        connection = _Connection()
        connection.finish()
        connector = _Connector(connection)
        client = make_client(
            connector,
            kalshi_api_key_id="key-1",
            kalshi_private_key_path=str(key_file),
            kalshi_ws_url="wss://demo-api.kalshi.co/trade-api/ws/v2",
        )

        await _run_until_done(client)

        url, headers = connector.calls[0]
        assert url == "wss://demo-api.kalshi.co/trade-api/ws/v2"
        rsa_key.public_key().verify(
            base64.b64decode(headers[HEADER_SIGNATURE]),
            f"{TS}GET/trade-api/ws/v2".encode(),
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.DIGEST_LENGTH),
            hashes.SHA256(),
        )

    async def test_no_key_id_connects_without_auth(self, make_client) -> None:
        connection = _Connection()
        connection.finish()
        connector = _Connector(connection)
        client = make_client(connector)

        await _run_until_done(client)

        assert connector.calls[0][1] == {}
        assert connection.commands() == []

    async def test_signing_failure_never_connects(
        self, make_client, sleeps, tmp_path: Path
    ) -> None:
        connector = _Connector(_Connection())
        client = make_client(
            connector,
            kalshi_api_key_id="key-1",
            kalshi_private_key_path=str(tmp_path / "missing.pem"),
        )

        await _run_until_done(client)

        assert connector.calls == []
        assert len(sleeps.delays) == 5


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TestSubscriptions:
    async def test_resubscribes_on_connect(self, make_client, key_file: Path) -> None:
        connection = _Connection()
        connection.finish()
        client = make_client(
            _Connector(connection),
            kalshi_api_key_id="key-1",
            kalshi_private_key_path=str(key_file),
        )
        await client.subscribe(["B-MKT", "A-MKT"])
        await client.subscribe(["A-MKT"], ORDERBOOK_CHANNEL)

        await _run_until_done(client)

        params = [m["params"] for m in connection.commands("subscribe")]
        assert params == [
            {"channels": [FILL_CHANNEL]},
            {"channels": [TICKER_CHANNEL], "market_tickers": ["A-MKT", "B-MKT"]},
            {"channels": [ORDERBOOK_CHANNEL], "market_tickers": ["A-MKT"]},
        ]
        ids = [m["id"] for m in connection.sent]
        assert len(set(ids)) == len(ids)

    async def test_reference_counted(self, make_client) -> None:
        connection = _Connection()
        client = make_client(_Connector(connection))
        await client.start()
        await _wait_for(lambda: client.is_connected)

        await client.subscribe(["A-MKT"])
        await client.subscribe(["A-MKT", "B-MKT"])
        await client.unsubscribe(["A-MKT"])
        assert client.subscribed_tickers() == {"A-MKT", "B-MKT"}
        await client.unsubscribe(["A-MKT", "B-MKT"])
        await client.unsubscribe(["A-MKT"])
        await client.stop()

        sent = [(m["cmd"], m["params"]["market_tickers"]) for m in connection.sent]
        assert sent == [
            ("subscribe", ["A-MKT"]),
            ("subscribe", ["B-MKT"]),
            ("unsubscribe", ["A-MKT", "B-MKT"]),
        ]
        assert client.subscribed_tickers() == set()
        assert connection.closed

    async def test_subscribe_while_disconnected_is_only_recorded(self, make_client) -> None:
        client = make_client(_Connector())

        await client.subscribe(["A-MKT"])

        assert client.subscribed_tickers() == {"A-MKT"}
        assert client.subscribed_tickers(ORDERBOOK_CHANNEL) == set()


# ---------------------------------------------------------------------------
# Messages and listeners
# ---------------------------------------------------------------------------


class TestListeners:
    async def test_events_relayed_in_order(self, make_client) -> None:
        connection = _Connection()
        connection.feed({"type": "subscribed", "id": 1, "msg": {"channel": "ticker", "sid": 1}})
        connection.feed(TICKER_MSG)
        connection.feed("not json")
        connection.feed({"type": "pong"})
        connection.feed({"type": "error", "msg": {"code": 6, "msg": "Already subscribed"}})
        connection.feed(FILL_MSG)
        connection.finish()
        client = make_client(_Connector(connection))
        events: list[dict[str, Any]] = []
        client.add_listener(events.append)

        await _run_until_done(client)

        assert events == [
            {"type": "status", "connected": True},
            {"type": "ticker", "data": TICKER_MSG["msg"]},
            {"type": "fill", "data": FILL_MSG["msg"]},
            {"type": "status", "connected": False},
        ]

    async def test_failing_listener_does_not_block_others(self, make_client) -> None:
        connection = _Connection()
        connection.feed(TICKER_MSG)
        connection.finish()
        client = make_client(_Connector(connection))

        def broken(event: dict[str, Any]) -> None:
            raise RuntimeError("boom")

        events: list[dict[str, Any]] = []
        client.add_listener(broken)
        client.add_listener(events.append)

        await _run_until_done(client)

        assert {"type": "ticker", "data": TICKER_MSG["msg"]} in events

    async def test_removed_listener_gets_nothing(self, make_client) -> None:
        connection = _Connection()
        connection.finish()
        client = make_client(_Connector(connection))
        events: list[dict[str, Any]] = []
        client.add_listener(events.append)
        client.remove_listener(events.append)
        client.remove_listener(events.append)

        await _run_until_done(client)

        assert events == []


# ---------------------------------------------------------------------------
# Keepalive and reconnection
# ---------------------------------------------------------------------------


class TestConnectionLoop:
    async def test_ping_keepalive(self, make_settings) -> None:
        connection = _Connection()
        client = KalshiWSClient(
            make_settings(), connector=_Connector(connection), ping_interval=0.01
        )
        await client.start()

        await _wait_for(lambda: bool(connection.commands("ping")))
        await client.stop()

        assert "params" not in connection.commands("ping")[0]

    async def test_gives_up_after_max_attempts(self, make_client, sleeps) -> None:
        connector = _Connector()
        client = make_client(connector)

        await _run_until_done(client)

        assert len(connector.calls) == 6
        assert sleeps.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert not client.is_running
        assert not client.is_connected

    async def test_successful_connect_resets_attempts(self, make_client, sleeps) -> None:
        first, second = _Connection(), _Connection()
        first.finish()
        second.finish()
        connector = _Connector(first, second)
        client = make_client(connector)

        await _run_until_done(client)

        assert len(connector.calls) == 7
        assert sleeps.delays == [1.0, 1.0, 2.0, 4.0, 8.0, 16.0]

    async def test_stop_before_start(self, make_client) -> None:
        client = make_client(_Connector())

        await client.stop()

        assert not client.is_running

    async def test_double_start_is_ignored(self, make_client) -> None:
        connection = _Connection()
        connector = _Connector(connection)
        client = make_client(connector)

        await client.start()
        await client.start()
        await _wait_for(lambda: client.is_connected)
        await client.stop()

        assert len(connector.calls) == 1
