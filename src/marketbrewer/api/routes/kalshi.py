"""Kalshi pass-through endpoints.

Each route maps one local path to one Kalshi endpoint and copies the
upstream status and JSON body straight into the response.
"""

from __future__ import annotations

from typing import Any

import orjson
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from marketbrewer.core.dependencies import ForwarderDep
from marketbrewer.kalshi.forwarder import ForwardResult, build_endpoint

router = APIRouter()

INVALID_BODY = {"error": "Invalid JSON body"}


def _relay(result: ForwardResult) -> JSONResponse:
    return JSONResponse(status_code=result.status, content=result.data)


def _with_query(path: str, request: Request) -> str:
    return build_endpoint(path, request.query_params.multi_items())


def _is_json(request: Request) -> bool:
    media_type = request.headers.get("content-type", "").split(";")[0]
    return media_type.strip().lower() == "application/json"


@router.get("/exchange/status")
async def exchange_status(forwarder: ForwarderDep) -> JSONResponse:
    return _relay(await forwarder.forward("GET", "/exchange/status"))


@router.get("/portfolio/balance")
async def portfolio_balance(forwarder: ForwarderDep) -> JSONResponse:
    return _relay(await forwarder.forward("GET", "/portfolio/balance"))


@router.get("/portfolio/positions")
async def portfolio_positions(request: Request, forwarder: ForwarderDep) -> JSONResponse:
    return _relay(await forwarder.forward("GET", _with_query("/portfolio/positions", request)))


@router.get("/portfolio/fills")
async def portfolio_fills(request: Request, forwarder: ForwarderDep) -> JSONResponse:
    """Trade history."""
    return _relay(await forwarder.forward("GET", _with_query("/portfolio/fills", request)))


@router.get("/markets")
async def list_markets(request: Request, forwarder: ForwarderDep) -> JSONResponse:
    return _relay(await forwarder.forward("GET", _with_query("/markets", request)))


@router.get("/markets/{ticker}")
async def get_market(ticker: str, forwarder: ForwarderDep) -> JSONResponse:
    return _relay(await forwarder.forward("GET", f"/markets/{ticker}"))


@router.post("/portfolio/orders")
async def place_order(request: Request, forwarder: ForwarderDep) -> JSONResponse:
    """Place an order. The body is passed to Kalshi unchanged.

    Only ``application/json`` bodies are read; any other content type forwards
    ``{}``. Top-level JSON must be an object or array.
    """
    body: Any = {}
    if _is_json(request):
        raw = await request.body()
        if raw.strip():
            try:
                body = orjson.loads(raw)
            except orjson.JSONDecodeError:
                return JSONResponse(status_code=400, content=INVALID_BODY)
            if not isinstance(body, (dict, list)):
                return JSONResponse(status_code=400, content=INVALID_BODY)
    return _relay(await forwarder.forward("POST", "/portfolio/orders", body))


@router.get("/portfolio/orders")
async def list_orders(request: Request, forwarder: ForwarderDep) -> JSONResponse:
    return _relay(await forwarder.forward("GET", _with_query("/portfolio/orders", request)))
