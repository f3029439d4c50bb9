"""Retention job -- deletes cached rows older than the configured horizons.

Runs on its own schedule, independent of the ingestion tick. Deletion is by
predicate inside a single transaction, so it is safe alongside concurrent
ingestion writes. The newest price row of every symbol is always kept so
the dashboard has a last-known value to show, however stale.
"""

import asyncio

from tickerwatch.data.store import CacheStore
from tickerwatch.logging import get_logger
from tickerwatch.models import RetentionPolicy, RetentionResult, now_ms

logger = get_logger(__name__)


class RetentionManager:
    """Periodically purges old price and candle rows.

    Args:
        store: Cache store to purge.
        policy: Price and candle horizons.
        interval_seconds: Delay between purge passes.
    """

    def __init__(
        self,
        store: CacheStore,
        policy: RetentionPolicy | None = None,
        interval_seconds: float = 3600.0,
    ) -> None:
        self._store = store
        self._policy = policy or RetentionPolicy()
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._last_result: RetentionResult | None = None

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    @property
    def last_result(self) -> RetentionResult | None:
        return self._last_result

    async def run_once(self, now: int | None = None) -> RetentionResult:
        """Delete everything past its horizon as of ``now`` (Unix ms)."""
        now = now_ms() if now is None else now
        prices_deleted, candles_deleted = await self._store.purge_older_than(
            self._policy.price_horizon_ms,
            self._policy.candle_horizon_ms,
            now,
        )
        result = RetentionResult(
            prices_deleted=prices_deleted,
            candles_deleted=candles_deleted,
        )
        self._last_result = result
        logger.info(
            "retention_purged",
            prices_deleted=prices_deleted,
            candles_deleted=candles_deleted,
            price_horizon_days=self._policy.price_horizon_days,
            candle_horizon_days=self._policy.candle_horizon_days,
        )
        return result

    async def start(self) -> None:
        """Begin purging in the background."""
        if self._running:
            logger.warning("retention_manager_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("retention_manager_started", interval=self._interval)

    async def stop(self) -> None:
        """Stop the purge loop. A purge in progress is rolled back."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("retention_manager_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("retention_run_error", exc_info=True)
            if self._running:
                await asyncio.sleep(self._interval)
