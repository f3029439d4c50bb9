"""Abstract price feed interface.

The ingestion coordinator depends only on this contract. Implementations
turn exchange responses into typed observations and classify every failure
as TransientFetchError or HardFetchError; nothing else may escape.
"""

from abc import ABC, abstractmethod

from tickerwatch.models import CandleObservation, PriceObservation


class PriceFeed(ABC):
    """Abstract base class for price feeds."""

    @abstractmethod
    async def connect(self) -> None:
        """Initialize connection and load markets."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        ...

    @abstractmethod
    async def fetch(self, symbol: str) -> PriceObservation:
        """Fetch the current price observation for one symbol.

        Raises:
            TransientFetchError: timeout, 5xx, rate limit.
            HardFetchError: auth failure, malformed response, unknown symbol.
        """
        ...

    @abstractmethod
    async def fetch_candles(
        self, symbol: str, interval: str, limit: int = 50
    ) -> list[CandleObservation]:
        """Fetch the most recent candles for a symbol, oldest first.

        Raises the same errors as fetch().
        """
        ...
