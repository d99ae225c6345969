"""Authenticated pass-through to the Kalshi Trade API v2.

Every call is signed with a fresh timestamp and sent once. Upstream status
codes and JSON bodies come back untouched; only local signing failures and
network/parse failures are turned into a 500.

API Base: https://api.elections.kalshi.com/trade-api/v2
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode, urlsplit

import httpx
import orjson

from marketbrewer.config import Settings
from marketbrewer.core.logging import get_logger
from marketbrewer.kalshi.auth import Signer, make_auth_headers, unix_timestamp

logger = get_logger(__name__)

SIGN_FAILED_ERROR = "Failed to sign request"
FETCH_FAILED_ERROR = "Failed to fetch from Kalshi API"


@dataclass(frozen=True, slots=True)
class ForwardResult:
    """Status and decoded JSON body of one forwarded call."""

    status: int
    data: Any


def build_endpoint(
    path: str, params: Mapping[str, str] | Iterable[tuple[str, str]] | None = None
) -> str:
    """Append ``?``-joined query params to an endpoint path when there are any."""
    if not params:
        return path
    query = urlencode(list(params.items()) if isinstance(params, Mapping) else list(params))
    return f"{path}?{query}" if query else path


class KalshiForwarder:
    """Signs and forwards requests to Kalshi.

    Usage:
        async with KalshiForwarder(settings) as forwarder:
            result = await forwarder.forward("GET", "/markets?limit=5")
    """

    def __init__(
        self,
        settings: Settings,
        signer: Signer | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], str] = unix_timestamp,
    ) -> None:
        self._base_url = settings.kalshi_api_url.rstrip("/")
        # Kalshi signs the full path, e.g. /trade-api/v2/markets
        self._path_prefix = urlsplit(self._base_url).path
        self._api_key_id = (
            settings.kalshi_api_key_id.get_secret_value() if settings.kalshi_api_key_id else None
        )
        self._timeout = settings.kalshi_request_timeout
        self._signer = signer or Signer.from_settings(settings)
        self._clock = clock
        self._client = client
        self._owns_client = client is None

    @property
    def auth_configured(self) -> bool:
        return bool(self._api_key_id)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> KalshiForwarder:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def forward(self, method: str, endpoint: str, body: Any = None) -> ForwardResult:
        """Forward one request to Kalshi.

        Args:
            method: HTTP method.
            endpoint: Path relative to the API base, query string included.
            body: JSON-serialisable request body, sent when not None.

        Returns:
            ForwardResult with the upstream status and body, or a local 500.
        """
        timestamp = self._clock()
        signature = self._signer.sign(method, f"{self._path_prefix}{endpoint}", timestamp)

        if signature is None and self._api_key_id:
            return ForwardResult(status=500, data={"error": SIGN_FAILED_ERROR})

        headers = {"Content-Type": "application/json"}
        if self._api_key_id and signature:
            headers.update(make_auth_headers(self._api_key_id, signature, timestamp))

        content = orjson.dumps(body) if body is not None else None

        try:
            response = await self._get_client().request(
                method,
                f"{self._base_url}{endpoint}",
                headers=headers,
                content=content,
            )
            data = orjson.loads(response.content)
        except (httpx.HTTPError, httpx.InvalidURL, orjson.JSONDecodeError) as e:
            logger.error("Kalshi API error", method=method, endpoint=endpoint, error=str(e))
            return ForwardResult(status=500, data={"error": FETCH_FAILED_ERROR})

        if response.is_error:
            logger.debug(
                "Kalshi returned error status", endpoint=endpoint, status=response.status_code
            )
        return ForwardResult(status=response.status_code, data=data)
