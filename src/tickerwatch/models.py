"""Shared data models for tickerwatch.

CRITICAL: All monetary values use Decimal. Never use float for prices or volumes.
Timestamps are Unix milliseconds (``*_ms``); ages are float seconds.
"""

import math
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


class ConnectivityState(str, Enum):
    """Trustworthiness of the cached data, as shown to the user."""

    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class FetchOutcome(str, Enum):
    """Aggregate result of one ingestion tick's fetch phase."""

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    HARD_FAILURE = "hard_failure"


class Comparator(str, Enum):
    """Direction of a price threshold alert."""

    ABOVE = "above"
    BELOW = "below"

    def satisfied(self, price: Decimal, threshold: Decimal) -> bool:
        if self is Comparator.ABOVE:
            return price > threshold
        return price < threshold


@dataclass(frozen=True)
class PriceObservation:
    """A price as returned by the feed, before it is cached."""

    symbol: str
    price: Decimal
    percent_change_24h: Decimal
    volume_24h: Decimal
    observed_at_ms: int


@dataclass(frozen=True)
class PriceSnapshot:
    """A cached price observation for one symbol."""

    symbol: str
    price: Decimal
    percent_change_24h: Decimal
    volume_24h: Decimal
    observed_at_ms: int
    fetched_at_ms: int

    @classmethod
    def from_observation(
        cls, observation: PriceObservation, fetched_at_ms: int
    ) -> "PriceSnapshot":
        return cls(
            symbol=observation.symbol,
            price=observation.price,
            percent_change_24h=observation.percent_change_24h,
            volume_24h=observation.volume_24h,
            observed_at_ms=observation.observed_at_ms,
            fetched_at_ms=fetched_at_ms,
        )


@dataclass(frozen=True)
class CandleObservation:
    """A single OHLCV candle as returned by the feed."""

    open_time_ms: int
    close_time_ms: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


@dataclass(frozen=True)
class CandleRecord:
    """A cached OHLCV candle, unique per (symbol, interval, open_time_ms)."""

    symbol: str
    interval: str
    open_time_ms: int
    close_time_ms: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    @classmethod
    def from_observation(
        cls, symbol: str, interval: str, observation: CandleObservation
    ) -> "CandleRecord":
        return cls(
            symbol=symbol,
            interval=interval,
            open_time_ms=observation.open_time_ms,
            close_time_ms=observation.close_time_ms,
            open=observation.open,
            high=observation.high,
            low=observation.low,
            close=observation.close,
            volume=observation.volume,
        )


@dataclass(frozen=True)
class RetentionPolicy:
    """How long cached rows are kept."""

    price_horizon_days: int = 30
    candle_horizon_days: int = 90

    @property
    def price_horizon_ms(self) -> int:
        return self.price_horizon_days * 86_400_000

    @property
    def candle_horizon_ms(self) -> int:
        return self.candle_horizon_days * 86_400_000


@dataclass(frozen=True)
class RetentionResult:
    """Rows removed by one retention pass."""

    prices_deleted: int
    candles_deleted: int


@dataclass(frozen=True)
class StoreStats:
    """Row counts and on-disk size of the cache database."""

    price_records: int
    candle_records: int
    database_size_bytes: int

    @property
    def database_size_mb(self) -> float:
        return self.database_size_bytes / (1024 * 1024)


@dataclass
class AlertRule:
    """A user-defined price threshold.

    ``armed`` is True while the rule is waiting for the next crossing.
    Only the AlertEvaluator flips it.
    """

    id: str
    symbol: str
    comparator: Comparator
    threshold: Decimal
    armed: bool = True
    created_at_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class AlertEvent:
    """Record of a rule firing on a crossing."""

    rule_id: str
    symbol: str
    comparator: Comparator
    threshold: Decimal
    snapshot: PriceSnapshot
    fired_at_ms: int


@dataclass(frozen=True)
class SymbolView:
    """Per-symbol row of the published dashboard view."""

    symbol: str
    snapshot: PriceSnapshot | None
    age_seconds: float  # math.inf when never observed
    last_success_ms: int | None

    @property
    def has_data(self) -> bool:
        return self.snapshot is not None

    def is_stale(self, max_age_seconds: float) -> bool:
        return self.age_seconds > max_age_seconds


@dataclass(frozen=True)
class PublishedView:
    """Consistent read-only picture of all symbols as of one tick."""

    tick: int
    generated_at_ms: int
    state: ConnectivityState
    manual_offline: bool
    outcome: FetchOutcome | None
    status_text: str
    symbols: tuple[SymbolView, ...] = ()

    def get(self, symbol: str) -> SymbolView | None:
        for entry in self.symbols:
            if entry.symbol == symbol:
                return entry
        return None

    @property
    def max_age_seconds(self) -> float:
        if not self.symbols:
            return math.inf
        return max(entry.age_seconds for entry in self.symbols)
