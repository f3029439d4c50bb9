"""Cache persistence layer.

Provides the SQLite connection manager, the typed price/candle store and
the retention job that keeps the cache bounded.
"""

from tickerwatch.data.database import CacheDatabase
from tickerwatch.data.retention import RetentionManager
from tickerwatch.data.store import CacheStore

__all__ = [
    "CacheDatabase",
    "CacheStore",
    "RetentionManager",
]
