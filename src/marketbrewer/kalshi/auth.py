"""Kalshi RSA-PSS request signing.

Kalshi authenticates each REST call with three headers:
- KALSHI-ACCESS-KEY
- KALSHI-ACCESS-TIMESTAMP
- KALSHI-ACCESS-SIGNATURE (RSA-PSS SHA256, salt_length=DIGEST_LENGTH)

Signing payload: timestamp + method + path
"""

from __future__ import annotations

import base64
import time
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from marketbrewer.core.exceptions import (
    InvalidPrivateKeyError,
    PrivateKeyNotFoundError,
    SigningError,
)
from marketbrewer.core.logging import get_logger

if TYPE_CHECKING:
    from marketbrewer.config import Settings

logger = get_logger(__name__)

HEADER_ACCESS_KEY = "KALSHI-ACCESS-KEY"
HEADER_SIGNATURE = "KALSHI-ACCESS-SIGNATURE"
HEADER_TIMESTAMP = "KALSHI-ACCESS-TIMESTAMP"


def unix_timestamp() -> str:
    """Current Unix time in whole seconds, as sent in KALSHI-ACCESS-TIMESTAMP."""
    return str(int(time.time()))


class KeyProvider(Protocol):
    """Source of the RSA private key used for signing."""

    def get_private_key(self) -> rsa.RSAPrivateKey: ...


def load_private_key(path: str | Path) -> rsa.RSAPrivateKey:
    """Load an RSA private key from a PEM file.

    Args:
        path: Filesystem path to the PEM key file. ``~`` is expanded.

    Returns:
        Loaded RSA private key.

    Raises:
        PrivateKeyNotFoundError: If the key file doesn't exist.
        InvalidPrivateKeyError: If the file isn't a valid RSA private key.
    """
    key_path = Path(path).expanduser()
    try:
        pem_data = key_path.read_bytes()
    except FileNotFoundError as e:
        raise PrivateKeyNotFoundError(f"Private key not found at: {key_path}") from e
    except OSError as e:
        raise InvalidPrivateKeyError(f"Cannot read private key at {key_path}: {e}") from e

    try:
        key = serialization.load_pem_private_key(pem_data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise InvalidPrivateKeyError(f"Invalid private key at {key_path}: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidPrivateKeyError(f"Expected RSA private key, got {type(key).__name__}")
    return key


class FileKeyProvider:
    """Reads the private key from disk on every call.

    Nothing is cached, so a rotated key file takes effect on the next request.
    """

    def __init__(self, path: str | Path | None) -> None:
        self._path = Path(path).expanduser() if path else None

    @property
    def path(self) -> Path | None:
        return self._path

    def get_private_key(self) -> rsa.RSAPrivateKey:
        if self._path is None:
            raise PrivateKeyNotFoundError("Private key path not configured")
        return load_private_key(self._path)


class Signer:
    """Produces Kalshi RSA-PSS signatures.

    Usage:
        signer = Signer(FileKeyProvider("~/.kalshi/key.pem"))
        signature = signer.sign("GET", "/trade-api/v2/portfolio/balance", "1700000000")
    """

    def __init__(self, key_provider: KeyProvider) -> None:
        self._key_provider = key_provider

    @classmethod
    def from_settings(cls, settings: Settings) -> Signer:
        return cls(FileKeyProvider(settings.kalshi_private_key_path))

    def sign(self, method: str, path: str, timestamp: str) -> str | None:
        """Sign ``timestamp + method + path``.

        Args:
            method: HTTP method, used as given.
            path: Absolute API path including any query string.
            timestamp: Unix timestamp string sent alongside the signature.

        Returns:
            Base64-encoded signature, or None if the key is missing or signing fails.
        """
        try:
            private_key = self._key_provider.get_private_key()
            message = f"{timestamp}{method}{path}".encode()
            signature = private_key.sign(
                message,
                padding.PSS(
                    mgf=padding.MGF1(hashes.SHA256()),
                    salt_length=padding.PSS.DIGEST_LENGTH,
                ),
                hashes.SHA256(),
            )
        except SigningError as e:
            logger.error("Failed to load Kalshi private key", error=e.message)
            return None
        except Exception as e:
            logger.error("Error signing request", method=method, path=path, error=str(e))
            return None

        return base64.b64encode(signature).decode()


def make_auth_headers(api_key_id: str, signature: str, timestamp: str) -> dict[str, str]:
    """Build the Kalshi authentication headers."""
    return {
        HEADER_ACCESS_KEY: api_key_id,
        HEADER_SIGNATURE: signature,
        HEADER_TIMESTAMP: timestamp,
    }
