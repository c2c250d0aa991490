"""Background primitives — tickers and clocks."""

from ccmsched.core.background.ticker import Clock, SystemClock, Ticker, start_ticker

__all__ = ["Clock", "SystemClock", "Ticker", "start_ticker"]
