"""Binance spot price feed via ccxt async.

Wraps ccxt.async_support.binance: resolves exchange ids such as ``BTCUSDT``
to ccxt unified symbols, converts tickers and klines into Decimal
observations, and classifies every ccxt failure as transient or hard.
"""

import asyncio
from decimal import Decimal, InvalidOperation

import ccxt.async_support as ccxt_async

from tickerwatch.config import FeedSettings
from tickerwatch.exceptions import FetchError, HardFetchError, TransientFetchError
from tickerwatch.feed.client import PriceFeed
from tickerwatch.logging import get_logger
from tickerwatch.models import CandleObservation, PriceObservation, now_ms

logger = get_logger(__name__)


def classify_error(symbol: str, error: Exception) -> FetchError:
    """Map a ccxt (or asyncio) exception onto the fetch error taxonomy.

    The NetworkError family covers timeouts, DDoS protection, rate limits
    and exchange maintenance; those are transient. Every other ccxt error
    (authentication, bad symbol, bad response, ...) is hard.
    """
    if isinstance(error, FetchError):
        return error
    if isinstance(error, (ccxt_async.NetworkError, asyncio.TimeoutError)):
        return TransientFetchError(symbol, f"{type(error).__name__}: {error}")
    return HardFetchError(symbol, f"{type(error).__name__}: {error}")


def _to_decimal(symbol: str, field_name: str, value: object) -> Decimal:
    if value is None:
        raise HardFetchError(symbol, f"missing {field_name}")
    try:
        result = Decimal(str(value))
    except InvalidOperation as e:
        raise HardFetchError(symbol, f"malformed {field_name}: {value!r}") from e
    if not result.is_finite():
        raise HardFetchError(symbol, f"malformed {field_name}: {value!r}")
    return result


def _to_ms(symbol: str, field_name: str, value: object) -> int:
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError, OverflowError) as e:
        raise HardFetchError(symbol, f"malformed {field_name}: {value!r}") from e


class BinanceFeed(PriceFeed):
    """Concrete Binance spot feed using ccxt async."""

    def __init__(
        self,
        settings: FeedSettings,
        exchange: ccxt_async.Exchange | None = None,
    ) -> None:
        self._settings = settings
        if exchange is None:
            exchange = ccxt_async.binance(
                {
                    "apiKey": settings.api_key.get_secret_value(),
                    "secret": settings.api_secret.get_secret_value(),
                    "enableRateLimit": True,
                    "timeout": settings.timeout_ms,
                    "options": {"defaultType": "spot"},
                }
            )
        self._exchange = exchange
        self._symbols_by_id: dict[str, str] = {}

    @property
    def exchange(self) -> ccxt_async.Exchange:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def connect(self) -> None:
        """Load markets so exchange ids can be resolved.

        Raises a classified FetchError if markets cannot be loaded. The
        feed stays usable: resolution retries the load on the next fetch.
        """
        logger.info("connecting_to_binance")
        await self._load_markets()
        logger.info("binance_connected", market_count=len(self._symbols_by_id))

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        logger.info("closing_binance_connection")
        await self._exchange.close()
        logger.info("binance_connection_closed")

    async def fetch(self, symbol: str) -> PriceObservation:
        """Fetch the 24h ticker for a symbol."""
        market_symbol = await self._resolve(symbol)
        try:
            ticker = await self._exchange.fetch_ticker(market_symbol)
        except (ccxt_async.BaseError, asyncio.TimeoutError) as e:
            raise classify_error(symbol, e) from e

        if not isinstance(ticker, dict):
            raise HardFetchError(symbol, "ticker response is not a mapping")

        observed_at = ticker.get("timestamp")
        return PriceObservation(
            symbol=symbol,
            price=_to_decimal(symbol, "last", ticker.get("last")),
            percent_change_24h=_to_decimal(
                symbol, "percentage", ticker.get("percentage") or 0
            ),
            volume_24h=_to_decimal(symbol, "baseVolume", ticker.get("baseVolume") or 0),
            observed_at_ms=(
                _to_ms(symbol, "timestamp", observed_at)
                if observed_at is not None
                else now_ms()
            ),
        )

    async def fetch_candles(
        self, symbol: str, interval: str, limit: int = 50
    ) -> list[CandleObservation]:
        """Fetch recent klines, oldest first."""
        market_symbol = await self._resolve(symbol)
        try:
            interval_ms = int(self._exchange.parse_timeframe(interval) * 1000)
            rows = await self._exchange.fetch_ohlcv(
                market_symbol, timeframe=interval, limit=limit
            )
        except (ccxt_async.BaseError, asyncio.TimeoutError) as e:
            raise classify_error(symbol, e) from e

        candles: list[CandleObservation] = []
        for row in rows or []:
            if not isinstance(row, (list, tuple)) or len(row) < 6:
                raise HardFetchError(symbol, f"malformed kline: {row!r}")
            open_time_ms = _to_ms(symbol, "kline open time", row[0])
            candles.append(
                CandleObservation(
                    open_time_ms=open_time_ms,
                    # Binance reports close time as the last millisecond of the candle
                    close_time_ms=open_time_ms + interval_ms - 1,
                    open=_to_decimal(symbol, "open", row[1]),
                    high=_to_decimal(symbol, "high", row[2]),
                    low=_to_decimal(symbol, "low", row[3]),
                    close=_to_decimal(symbol, "close", row[4]),
                    volume=_to_decimal(symbol, "volume", row[5] or 0),
                )
            )
        candles.sort(key=lambda c: c.open_time_ms)
        return candles

    async def _load_markets(self) -> None:
        try:
            markets = await self._exchange.load_markets()
        except (ccxt_async.BaseError, asyncio.TimeoutError) as e:
            raise classify_error("*", e) from e
        self._symbols_by_id = {
            market["id"]: unified
            for unified, market in markets.items()
            if market.get("spot") and market.get("id")
        }

    async def _resolve(self, symbol: str) -> str:
        """Return the ccxt unified symbol for an exchange id like BTCUSDT."""
        if not self._symbols_by_id:
            await self._load_markets()
        if symbol in self._symbols_by_id:
            return self._symbols_by_id[symbol]
        if symbol in self._symbols_by_id.values():
            return symbol
        raise HardFetchError(symbol, "unknown symbol")
