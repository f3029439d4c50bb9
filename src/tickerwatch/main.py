"""Entry point for tickerwatch.

Wires the cache, feed, freshness tracking, alerting, ingestion and
retention together and runs them on one asyncio event loop until a
shutdown signal arrives. Rendering is left to whichever UI reads the
coordinator's published view.

Handles SIGINT/SIGTERM for graceful shutdown and SIGUSR1 to toggle the
manual offline mode.

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. CacheDatabase + CacheStore (fatal if the database is unreadable or unopenable)
4. BinanceFeed (price feed)
5. FreshnessStateMachine (connectivity state)
6. AlertEvaluator (price alerts)
7. IngestionCoordinator (polling loop)
8. RetentionManager (purge loop)
"""

import asyncio
import signal
import sys
from typing import Any

from tickerwatch.config import AppSettings
from tickerwatch.data.database import CacheDatabase
from tickerwatch.data.retention import RetentionManager
from tickerwatch.data.store import CacheStore
from tickerwatch.exceptions import FetchError, StoreCorruptError, StoreIOError
from tickerwatch.feed.binance_client import BinanceFeed
from tickerwatch.ingestion import IngestionCoordinator
from tickerwatch.logging import get_logger, setup_logging
from tickerwatch.market_data.alerts import AlertEvaluator
from tickerwatch.market_data.freshness import FreshnessStateMachine
from tickerwatch.models import RetentionPolicy


async def _build_components(settings: AppSettings, database: CacheDatabase) -> dict[str, Any]:
    """Build all components around an already connected database.

    Args:
        settings: Application-wide settings.
        database: Open cache database.

    Returns:
        Dict mapping component names to instances.
    """
    store = CacheStore(database)
    feed = BinanceFeed(settings.feed)
    freshness = FreshnessStateMachine(
        refresh_interval=settings.watch.refresh_interval,
        n_recover=settings.freshness.n_recover,
        n_fail=settings.freshness.n_fail,
    )
    evaluator = AlertEvaluator(max_events=settings.alerts.max_events)
    coordinator = IngestionCoordinator(
        settings=settings.watch,
        feed=feed,
        store=store,
        freshness=freshness,
        evaluator=evaluator,
    )
    retention = RetentionManager(
        store,
        RetentionPolicy(
            price_horizon_days=settings.retention.price_horizon_days,
            candle_horizon_days=settings.retention.candle_horizon_days,
        ),
        interval_seconds=settings.retention.interval_seconds,
    )
    return {
        "store": store,
        "feed": feed,
        "freshness": freshness,
        "evaluator": evaluator,
        "coordinator": coordinator,
        "retention": retention,
    }


async def _open_database(db_path: str) -> CacheDatabase:
    """Connect the cache database, exiting with status 2 if it is unusable.

    Both an unreadable file and one that cannot be opened at all (missing
    permissions, a file where a directory should be) are fatal at startup.
    """
    logger = get_logger("tickerwatch.main")
    database = CacheDatabase(db_path)
    try:
        await database.connect()
    except StoreCorruptError as e:
        logger.critical("refusing_to_start_on_corrupt_cache", db_path=db_path, error=str(e))
        raise SystemExit(2) from e
    except StoreIOError as e:
        logger.critical("cache_unavailable_at_startup", db_path=db_path, error=str(e))
        raise SystemExit(2) from e
    return database


def _setup_signal_handlers(
    coordinator: IngestionCoordinator, stop_event: asyncio.Event
) -> None:
    """Register OS signal handlers.

    SIGINT/SIGTERM stop the process. SIGUSR1 toggles manual offline mode.
    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("tickerwatch.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    def _offline_handler() -> None:
        state = coordinator.toggle_manual_offline()
        logger.info("manual_offline_toggled_by_signal", state=state.value)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)
    loop.add_signal_handler(signal.SIGUSR1, _offline_handler)


async def run() -> None:
    """Run tickerwatch until SIGINT/SIGTERM."""
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level, settings.log_file)
    logger = get_logger("tickerwatch.main")

    # 3. Open the cache; an unusable store is fatal
    database = await _open_database(settings.storage.db_path)

    # 4-8. Build everything else
    components = await _build_components(settings, database)
    coordinator: IngestionCoordinator = components["coordinator"]
    retention: RetentionManager = components["retention"]
    feed: BinanceFeed = components["feed"]

    stop_event = asyncio.Event()
    _setup_signal_handlers(coordinator, stop_event)

    logger.info(
        "tickerwatch_starting",
        symbols=settings.watch.symbols,
        refresh_interval=settings.watch.refresh_interval,
        db_path=settings.storage.db_path,
    )

    try:
        try:
            await feed.connect()
        except FetchError as e:
            # Cached data is still served; markets load again on the next fetch
            logger.warning("feed_connect_failed", error=str(e))

        await coordinator.start()
        if settings.retention.enabled:
            await retention.start()

        await stop_event.wait()
    finally:
        await retention.stop()
        await coordinator.stop()
        await feed.close()
        await database.close()
        logger.info("tickerwatch_stopped")


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
