"""Core utilities: logging, exceptions, dependencies."""

from marketbrewer.core.exceptions import MarketBrewerError
from marketbrewer.core.logging import get_logger, setup_logging

__all__ = [
    "MarketBrewerError",
    "get_logger",
    "setup_logging",
]
