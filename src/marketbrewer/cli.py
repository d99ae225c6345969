"""CLI entry point for MarketBrewer."""

import argparse

import uvicorn

from marketbrewer.config import get_settings


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="MarketBrewer Kalshi proxy")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--host", default=settings.server_host, help="Bind host")
    parser.add_argument("--port", type=int, default=settings.server_port, help="Bind port")
    args = parser.parse_args()

    uvicorn.run(
        "marketbrewer.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
