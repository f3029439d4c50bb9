"""Tests for BinanceFeed.

All tests use a mocked ccxt exchange object to avoid real API calls.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt
import pytest

from tickerwatch.config import FeedSettings
from tickerwatch.exceptions import FetchError, HardFetchError, TransientFetchError
from tickerwatch.feed.binance_client import BinanceFeed, classify_error


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

MOCK_MARKETS = {
    "BTC/USDT": {"id": "BTCUSDT", "symbol": "BTC/USDT", "spot": True},
    "ETH/USDT": {"id": "ETHUSDT", "symbol": "ETH/USDT", "spot": True},
    "BTC/USDT:USDT": {"id": "BTCUSDT", "symbol": "BTC/USDT:USDT", "spot": False},
}

MOCK_TICKER = {
    "symbol": "BTC/USDT",
    "timestamp": 1_700_000_000_000,
    "last": 50123.45,
    "percentage": -1.25,
    "baseVolume": 12345.678,
}


@pytest.fixture
def mock_exchange() -> MagicMock:
    exchange = MagicMock()
    exchange.load_markets = AsyncMock(return_value=MOCK_MARKETS)
    exchange.fetch_ticker = AsyncMock(return_value=dict(MOCK_TICKER))
    exchange.fetch_ohlcv = AsyncMock(return_value=[])
    exchange.parse_timeframe = MagicMock(return_value=300)
    exchange.close = AsyncMock()
    return exchange


@pytest.fixture
def feed(mock_exchange: MagicMock) -> BinanceFeed:
    return BinanceFeed(FeedSettings(), exchange=mock_exchange)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class TestClassifyError:
    @pytest.mark.parametrize(
        "error",
        [
            ccxt.RequestTimeout("timed out"),
            ccxt.RateLimitExceeded("429"),
            ccxt.ExchangeNotAvailable("503"),
            ccxt.DDoSProtection("slow down"),
            asyncio.TimeoutError(),
        ],
    )
    def test_transient(self, error: Exception) -> None:
        result = classify_error("BTCUSDT", error)
        assert isinstance(result, TransientFetchError)
        assert result.symbol == "BTCUSDT"

    @pytest.mark.parametrize(
        "error",
        [
            ccxt.AuthenticationError("bad key"),
            ccxt.BadSymbol("no such market"),
            ccxt.BadResponse("garbage"),
            ccxt.ExchangeError("unknown"),
        ],
    )
    def test_hard(self, error: Exception) -> None:
        assert isinstance(classify_error("BTCUSDT", error), HardFetchError)

    def test_fetch_error_passes_through(self) -> None:
        error = TransientFetchError("BTCUSDT", "already classified")
        assert classify_error("BTCUSDT", error) is error


# ---------------------------------------------------------------------------
# Lifecycle and symbol resolution
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_connect_loads_spot_markets(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        await feed.connect()
        mock_exchange.load_markets.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_failure_is_classified(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        mock_exchange.load_markets = AsyncMock(side_effect=ccxt.NetworkError("down"))
        with pytest.raises(TransientFetchError):
            await feed.connect()

    @pytest.mark.asyncio
    async def test_close_calls_exchange_close(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        await feed.close()
        mock_exchange.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_markets_loaded_lazily_on_first_fetch(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        await feed.fetch("BTCUSDT")
        await feed.fetch("ETHUSDT")
        mock_exchange.load_markets.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exchange_id_resolves_to_spot_symbol(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        await feed.fetch("BTCUSDT")
        mock_exchange.fetch_ticker.assert_awaited_once_with("BTC/USDT")

    @pytest.mark.asyncio
    async def test_unified_symbol_accepted(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        await feed.fetch("ETH/USDT")
        mock_exchange.fetch_ticker.assert_awaited_once_with("ETH/USDT")

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_hard_failure(self, feed: BinanceFeed) -> None:
        with pytest.raises(HardFetchError) as exc_info:
            await feed.fetch("NOPEUSDT")
        assert exc_info.value.symbol == "NOPEUSDT"


# ---------------------------------------------------------------------------
# fetch()
# ---------------------------------------------------------------------------


class TestFetch:
    @pytest.mark.asyncio
    async def test_ticker_converted_to_decimal_observation(self, feed: BinanceFeed) -> None:
        obs = await feed.fetch("BTCUSDT")

        assert obs.symbol == "BTCUSDT"
        assert obs.price == Decimal("50123.45")
        assert obs.percent_change_24h == Decimal("-1.25")
        assert obs.volume_24h == Decimal("12345.678")
        assert obs.observed_at_ms == 1_700_000_000_000
        assert isinstance(obs.price, Decimal)

    @pytest.mark.asyncio
    async def test_missing_optional_fields_default_to_zero(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        mock_exchange.fetch_ticker = AsyncMock(
            return_value={"last": 1.5, "percentage": None, "baseVolume": None, "timestamp": 42}
        )
        obs = await feed.fetch("BTCUSDT")
        assert obs.percent_change_24h == Decimal("0")
        assert obs.volume_24h == Decimal("0")
        assert obs.observed_at_ms == 42

    @pytest.mark.asyncio
    async def test_missing_timestamp_uses_local_clock(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        mock_exchange.fetch_ticker = AsyncMock(return_value={"last": 1.5, "timestamp": None})
        obs = await feed.fetch("BTCUSDT")
        assert obs.observed_at_ms > 1_700_000_000_000

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "ticker",
        [
            {"last": None, "timestamp": 1},
            {"last": "abc", "timestamp": 1},
            {"last": float("nan"), "timestamp": 1},
            {"last": 1.5, "timestamp": "n/a"},
            {"last": 1.5, "timestamp": float("inf")},
            ["not", "a", "mapping"],
        ],
    )
    async def test_malformed_ticker_is_hard_failure(
        self, feed: BinanceFeed, mock_exchange: MagicMock, ticker: object
    ) -> None:
        mock_exchange.fetch_ticker = AsyncMock(return_value=ticker)
        with pytest.raises(HardFetchError):
            await feed.fetch("BTCUSDT")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        mock_exchange.fetch_ticker = AsyncMock(side_effect=ccxt.RequestTimeout("slow"))
        with pytest.raises(TransientFetchError):
            await feed.fetch("BTCUSDT")

    @pytest.mark.asyncio
    async def test_auth_error_is_hard(self, feed: BinanceFeed, mock_exchange: MagicMock) -> None:
        mock_exchange.fetch_ticker = AsyncMock(side_effect=ccxt.AuthenticationError("denied"))
        with pytest.raises(HardFetchError):
            await feed.fetch("BTCUSDT")

    @pytest.mark.asyncio
    async def test_only_fetch_errors_escape(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        mock_exchange.fetch_ticker = AsyncMock(side_effect=ccxt.BadResponse("html page"))
        with pytest.raises(FetchError):
            await feed.fetch("BTCUSDT")


# ---------------------------------------------------------------------------
# fetch_candles()
# ---------------------------------------------------------------------------


class TestFetchCandles:
    @pytest.mark.asyncio
    async def test_klines_parsed_and_sorted(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        mock_exchange.fetch_ohlcv = AsyncMock(
            return_value=[
                [1_700_000_300_000, 101, 103, 100, 102, 7.5],
                [1_700_000_000_000, 100, 102, 99, 101, 5],
            ]
        )

        candles = await feed.fetch_candles("BTCUSDT", "5m", limit=2)

        mock_exchange.fetch_ohlcv.assert_awaited_once_with("BTC/USDT", timeframe="5m", limit=2)
        assert [c.open_time_ms for c in candles] == [1_700_000_000_000, 1_700_000_300_000]
        first = candles[0]
        assert first.close_time_ms == 1_700_000_299_999
        assert first.open == Decimal("100")
        assert first.high == Decimal("102")
        assert first.low == Decimal("99")
        assert first.close == Decimal("101")
        assert first.volume == Decimal("5")

    @pytest.mark.asyncio
    async def test_empty_response(self, feed: BinanceFeed) -> None:
        assert await feed.fetch_candles("BTCUSDT", "5m") == []

    @pytest.mark.asyncio
    async def test_short_row_is_hard_failure(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        mock_exchange.fetch_ohlcv = AsyncMock(return_value=[[1_700_000_000_000, 1, 2]])
        with pytest.raises(HardFetchError):
            await feed.fetch_candles("BTCUSDT", "5m")

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(
        self, feed: BinanceFeed, mock_exchange: MagicMock
    ) -> None:
        mock_exchange.fetch_ohlcv = AsyncMock(side_effect=ccxt.RateLimitExceeded("429"))
        with pytest.raises(TransientFetchError):
            await feed.fetch_candles("BTCUSDT", "5m")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "row",
        [
            [None, 1, 2, 3, 4, 5],
            ["soon", 1, 2, 3, 4, 5],
            [1_700_000_000_000, 1, 2, None, 4, 5],
        ],
    )
    async def test_malformed_kline_is_hard_failure(
        self, feed: BinanceFeed, mock_exchange: MagicMock, row: list
    ) -> None:
        mock_exchange.fetch_ohlcv = AsyncMock(return_value=[row])
        with pytest.raises(HardFetchError):
            await feed.fetch_candles("BTCUSDT", "5m")
