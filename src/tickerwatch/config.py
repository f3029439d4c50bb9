"""Configuration system using pydantic-settings with environment variable loading.

Settings are read once at startup. A change of symbols or intervals means
restarting the ingestion coordinator with a new AppSettings.
"""

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYMBOLS = [
    "BTCUSDT",
    "ETHUSDT",
    "BNBUSDT",
    "ADAUSDT",
    "SOLUSDT",
    "DOTUSDT",
    "DOGEUSDT",
    "AVAXUSDT",
    "LTCUSDT",
    "LINKUSDT",
]


class FeedSettings(BaseSettings):
    """Binance feed connection settings. Market data needs no API keys."""

    model_config = SettingsConfigDict(env_prefix="FEED_")

    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    timeout_ms: int = 10000


class WatchSettings(BaseSettings):
    """Which symbols to poll and how often."""

    model_config = SettingsConfigDict(env_prefix="WATCH_")

    symbols: list[str] = list(DEFAULT_SYMBOLS)
    refresh_interval: float = 5.0  # seconds between ingestion ticks
    candle_interval: str = "5m"
    candle_limit: int = 50
    candle_refresh_ticks: int = 12  # fetch candles every N ticks

    @field_validator("symbols")
    @classmethod
    def _normalise_symbols(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for raw in value:
            symbol = raw.strip().upper()
            if symbol and symbol not in seen:
                seen.append(symbol)
        if not seen:
            raise ValueError("at least one symbol must be configured")
        return seen


class FreshnessSettings(BaseSettings):
    """Hysteresis constants for the connectivity state machine."""

    model_config = SettingsConfigDict(env_prefix="FRESHNESS_")

    n_recover: int = 2  # consecutive successes before Degraded -> Online
    n_fail: int = 3  # consecutive failures before Degraded -> Offline


class RetentionSettings(BaseSettings):
    """Row retention horizons and the purge schedule."""

    model_config = SettingsConfigDict(env_prefix="RETENTION_")

    enabled: bool = True
    price_horizon_days: int = 30
    candle_horizon_days: int = 90
    interval_seconds: float = 3600.0


class StorageSettings(BaseSettings):
    """Cache database location."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    db_path: str = "data/tickerwatch.db"


class AlertSettings(BaseSettings):
    """Alert event log configuration."""

    model_config = SettingsConfigDict(env_prefix="ALERTS_")

    max_events: int = 1000  # oldest undrained events are dropped beyond this


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_file: str | None = None  # stderr when unset
    feed: FeedSettings = FeedSettings()
    watch: WatchSettings = WatchSettings()
    freshness: FreshnessSettings = FreshnessSettings()
    retention: RetentionSettings = RetentionSettings()
    storage: StorageSettings = StorageSettings()
    alerts: AlertSettings = AlertSettings()
