"""FastAPI application entry point."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketbrewer.api import api_router
from marketbrewer.api.routes import stream
from marketbrewer.config import get_settings
from marketbrewer.core.logging import get_logger, setup_logging
from marketbrewer.kalshi.forwarder import KalshiForwarder
from marketbrewer.kalshi.ws import KalshiWSClient

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan — owns the Kalshi forwarder and the upstream WebSocket."""
    settings = get_settings()
    setup_logging(settings)

    kalshi_ws = KalshiWSClient(settings)
    app.state.kalshi_ws = kalshi_ws
    key_path = settings.resolved_private_key_path
    # The Kalshi WebSocket rejects unauthenticated handshakes
    if settings.kalshi_auth_configured and key_path:
        await kalshi_ws.start()
    else:
        logger.warning("Kalshi credentials not configured, WebSocket relay disabled")

    try:
        async with KalshiForwarder(settings) as forwarder:
            app.state.forwarder = forwarder
            logger.info(
                "MarketBrewer proxy ready",
                env=settings.env,
                port=settings.server_port,
                kalshi_api_key="configured" if settings.kalshi_auth_configured else "not configured",
                private_key_path=str(key_path) if key_path else "not configured",
                websocket=f"ws://localhost:{settings.server_port}/ws",
            )
            yield
    finally:
        await kalshi_ws.stop()


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(
        title="MarketBrewer",
        description="Kalshi earnings-call mention market proxy",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(api_router, prefix="/api")
    application.include_router(stream.router)
    return application


app = create_app()
