"""Kalshi request signing, forwarding and streaming."""

from marketbrewer.kalshi.auth import FileKeyProvider, KeyProvider, Signer, load_private_key
from marketbrewer.kalshi.forwarder import ForwardResult, KalshiForwarder, build_endpoint
from marketbrewer.kalshi.ws import KalshiWSClient

__all__ = [
    "FileKeyProvider",
    "ForwardResult",
    "KalshiForwarder",
    "KalshiWSClient",
    "KeyProvider",
    "Signer",
    "build_endpoint",
    "load_private_key",
]
