"""HTTP API."""

from marketbrewer.api.router import api_router

__all__ = ["api_router"]
