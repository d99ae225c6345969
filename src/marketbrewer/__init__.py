"""MarketBrewer: Kalshi mention-market proxy for earnings calls."""

__version__ = "0.1.0"
