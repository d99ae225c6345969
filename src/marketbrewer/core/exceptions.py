"""Custom exceptions for MarketBrewer."""


class MarketBrewerError(Exception):
    """Base exception for all MarketBrewer errors."""

    def __init__(self, message: str, *args: object) -> None:
        self.message = message
        super().__init__(message, *args)


# Signing errors
class SigningError(MarketBrewerError):
    """Failed to produce a Kalshi request signature."""


class PrivateKeyNotFoundError(SigningError):
    """The configured private key file does not exist."""


class InvalidPrivateKeyError(SigningError):
    """The private key file is not a usable RSA private key."""

