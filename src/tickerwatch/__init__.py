"""tickerwatch -- offline-tolerant price cache, freshness tracking and alerting."""

__version__ = "0.1.0"
