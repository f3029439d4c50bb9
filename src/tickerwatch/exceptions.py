"""Custom exceptions for tickerwatch.

Fetch and storage errors live here so the feed adapters, the cache store
and the ingestion coordinator can share them without circular imports.
"""


class TickerwatchError(Exception):
    """Base exception for all tickerwatch errors."""


class FetchError(TickerwatchError):
    """Raised by a price feed when a symbol could not be fetched."""

    def __init__(self, symbol: str, message: str = "") -> None:
        self.symbol = symbol
        super().__init__(f"{symbol}: {message}" if message else symbol)


class TransientFetchError(FetchError):
    """Timeout, 5xx, rate limit -- worth retrying on the next tick."""


class HardFetchError(FetchError):
    """Auth failure, malformed response or unknown symbol."""


class StoreError(TickerwatchError):
    """Base class for cache store failures."""


class StoreIOError(StoreError):
    """A read or write against the cache database failed."""


class StoreCorruptError(StoreError):
    """The persisted cache cannot be read. Fatal when opening the store."""
