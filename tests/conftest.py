"""Pytest fixtures and configuration."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from marketbrewer.config import Settings, get_settings

_ENV_VARS = (
    "MARKETBREWER_ENV",
    "MARKETBREWER_LOG_LEVEL",
    "SERVER_HOST",
    "SERVER_PORT",
    "CORS_ORIGINS",
    "KALSHI_API_URL",
    "KALSHI_API_KEY_ID",
    "KALSHI_PRIVATE_KEY_PATH",
    "KALSHI_REQUEST_TIMEOUT",
    "KALSHI_WS_URL",
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip integration tests by default unless -m integration is specified."""
    markexpr = config.getoption("-m", default="")
    if "integration" in markexpr:
        return

    skip_integration = pytest.mark.skip(reason="Integration test - run with: pytest -m integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, request: pytest.FixtureRequest) -> None:
    """Keep the developer's shell and .env out of unit tests."""
    if "integration" in request.keywords:
        return
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()


def _write_pem(key: Any, path: Path) -> Path:
    path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return path


@pytest.fixture
def write_pem() -> Callable[[Any, Path], Path]:
    """Write a private key to a PKCS8 PEM file."""
    return _write_pem


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def key_file(tmp_path: Path, rsa_key: rsa.RSAPrivateKey) -> Path:
    return _write_pem(rsa_key, tmp_path / "kalshi.pem")


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Build Settings without reading the environment or a .env file."""

    def _make(**overrides: Any) -> Settings:
        return Settings(_env_file=None, **overrides)

    return _make
